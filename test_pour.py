import io
import os
import json
import base64
import hashlib
import tarfile

import pytest

from pour import (
    Arch, Bottle, BottleFile, Bottles, ChecksumMismatch, CircularDependency,
    Config, Context, DependencyChecker, DependencyGraph, ExtractionFailed,
    File, Formula, Formulary, InstallQueue, Keg, LinkConflict, Linker,
    LocalPackage, NoBottleForPlatform, NoStableVersion, NoSuchKeg,
    PackageNotFound, Paths, RefusingToUninstall, Tab, TarPackage,
    UninstallQueue, UsageError, normalizeName,
)

ARCH = Arch(isMac=True, isArm=True, osVersion='15')
TAG = 'arm64_sequoia'


class FakeFormulary:
    ''' In-memory formula lookup. Records every `get()` call. '''

    def __init__(self, *formulae: Formula) -> None:
        self.formulae = {x.name: x for x in formulae}
        self.calls = []  # type: list[str]

    def get(self, name: str) -> Formula:
        name = normalizeName(name)
        self.calls.append(name)
        if name not in self.formulae:
            raise PackageNotFound(name)
        return self.formulae[name]


def makeContext(tmp: str, *formulae: Formula) -> Context:
    prefix = os.path.join(tmp, 'prefix')
    paths = Paths(
        prefix=prefix,
        cellar=os.path.join(prefix, 'Cellar'),
        cache=os.path.join(tmp, 'cache'),
        caskroom=os.path.join(prefix, 'Caskroom'),
    )
    return Context(paths, Config(), ARCH, FakeFormulary(*formulae))


def writeTar(fname: str, members: 'dict[str, str]') -> str:
    os.makedirs(os.path.dirname(fname), exist_ok=True)
    with tarfile.open(fname, 'w:gz') as tar:
        for path, content in members.items():
            data = content.encode('utf8')
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return fname


def makeBottle(
    ctx: Context, name: str, version: str = '1.0', deps: 'tuple[str, ...]' = (),
    *, files: 'dict[str, str]|None' = None, tag: str = TAG,
    sha256: str = '', archiveRoot: str = '', **kwargs: 'object'
) -> Formula:
    ''' Write a bottle archive into the download cache, register formula '''
    formula = Formula(name, version, dependencies=tuple(deps), **kwargs)
    url = f'https://ghcr.io/v2/homebrew/core/{name}/blobs/sha256:{version}'
    archive = Bottles.cachePath(
        ctx.paths, url, Bottles.filename(formula, tag, 0))
    root = archiveRoot or f'{name}/{formula.pkgVersion}'
    writeTar(archive, {
        f'{root}/{rel}': content for rel, content in
        (files or {f'bin/{name}': '#!/bin/sh\n'}).items()})
    formula = formula._replace(bottle=Bottle(0, {
        tag: BottleFile(url, sha256 or File.sha256(archive))}))
    ctx.formulary.formulae[name] = formula
    return formula


def makeKeg(ctx: Context, name: str, version: str = '1.0',
            files: 'list[str]|None' = None) -> Keg:
    keg = Keg(ctx.paths, name, version)
    for rel in files or [f'bin/{name}']:
        fname = os.path.join(keg.path, rel)
        os.makedirs(os.path.dirname(fname), exist_ok=True)
        with open(fname, 'w') as fp:
            fp.write(rel)
    return keg


def installFake(
    ctx: Context, name: str, deps: 'tuple[str, ...]' = (), *,
    asDependency: bool = False, version: str = '1.0',
) -> Keg:
    ''' Installed keg with opt alias and receipt, without pipeline '''
    formula = Formula(name, version, dependencies=tuple(deps))
    ctx.formulary.formulae[name] = formula
    keg = makeKeg(ctx, name, version)
    keg.linkOpt()
    keg.writeTab(formula, asDependency, ARCH)
    return keg


def prefixLinks(ctx: Context) -> 'list[str]':
    rv = []
    for base, dirs, files in os.walk(ctx.paths.prefix):
        if base == ctx.paths.prefix:
            dirs[:] = [x for x in dirs if x in Linker.LINK_DIRS]
        for x in files + dirs:
            if os.path.islink(os.path.join(base, x)):
                rv.append(os.path.relpath(os.path.join(base, x),
                                          ctx.paths.prefix))
    return sorted(rv)


def diamond() -> FakeFormulary:
    return FakeFormulary(
        Formula('a', '1.0', dependencies=('b', 'c')),
        Formula('b', '1.0', dependencies=('d',)),
        Formula('c', '1.0', dependencies=('d',)),
        Formula('d', '1.0'),
    )


# -----------------------------------
#  Configuration
# -----------------------------------

def testPathsFromEnvironment() -> None:
    paths = Paths.detect({'HOMEBREW_PREFIX': '/tmp/brew/',
                          'HOMEBREW_CACHE': '/tmp/cache'})
    assert paths.prefix == '/tmp/brew'
    assert paths.cellar == '/tmp/brew/Cellar'
    assert paths.caskroom == '/tmp/brew/Caskroom'
    assert paths.cache == '/tmp/cache'
    assert paths.opt == '/tmp/brew/opt'
    assert paths.downloads == '/tmp/cache/downloads'
    assert paths.pinned == '/tmp/brew/var/homebrew/pinned'

    paths = Paths.detect({'HOMEBREW_PREFIX': '/p', 'HOMEBREW_CELLAR': '/c'})
    assert paths.cellar == '/c'
    assert paths.shortPath('/p/bin/wget') == 'bin/wget'
    assert paths.shortPath('/c/wget') == '/c/wget'


def testBottleTag() -> None:
    assert Arch(True, True, '15').bottleTag == 'arm64_sequoia'
    assert Arch(True, False, '10.15').bottleTag == 'catalina'
    assert Arch(False, False, '6.8.0').bottleTag == 'x86_64_linux'
    assert Arch(False, True, '6.8.0').bottleTag == 'arm64_linux'
    assert Arch(True, True, '15', 'all').bottleTag == 'all'
    assert Arch(False, True, '6.8.0').builtOn()['os'] == 'Linux'


def testConfigLoad(tmp_path) -> None:
    fname = str(tmp_path / 'pour' / 'config.ini')
    assert Config.load(fname) == Config(linkOnInstall=True,
                                        keepOldVersions=False)
    assert os.path.isfile(fname)  # default written on first run

    with open(fname, 'w') as fp:
        fp.write('[upgrade]\nkeep_old = yes  ; comment\n')
    assert Config.load(fname) == Config(linkOnInstall=True,
                                        keepOldVersions=True)
    assert Config.location({'POUR_CONFIG': '/x.ini'}) == '/x.ini'
    assert Config.location({'XDG_CONFIG_HOME': '/cfg'}) == \
        '/cfg/pour/config.ini'


# -----------------------------------
#  Formula
# -----------------------------------

WGET_JSON = {
    'name': 'wget',
    'full_name': 'wget',
    'aliases': ['wget-alias'],
    'versions': {'stable': '1.25.0', 'head': 'HEAD', 'bottle': True},
    'revision': 1,
    'dependencies': ['libidn2', 'openssl@3'],
    'build_dependencies': ['pkgconf'],
    'optional_dependencies': [],
    'bottle': {'stable': {'rebuild': 2, 'files': {
        'arm64_sequoia': {
            'cellar': '/opt/homebrew/Cellar',
            'url': 'https://ghcr.io/v2/homebrew/core/wget/blobs/sha256:abc',
            'sha256': 'abc',
        },
    }}},
    'keg_only': False,
}


def testNormalizeName() -> None:
    assert normalizeName('homebrew/core/wget') == 'wget'
    assert normalizeName('wget') == 'wget'


def testFormulaFromJson() -> None:
    formula = Formula.fromJson(WGET_JSON)
    assert formula.pkgVersion == '1.25.0_1'
    assert formula.dependencyList() == ['libidn2', 'openssl@3']
    assert formula.dependencyList(build=True) == \
        ['libidn2', 'openssl@3', 'pkgconf']
    assert formula.bottle and formula.bottle.rebuild == 2
    assert formula.bottle.forTag('arm64_sequoia') == ('arm64_sequoia',
                                                      BottleFile(
        'https://ghcr.io/v2/homebrew/core/wget/blobs/sha256:abc', 'abc'))
    assert formula.bottle.forTag('x86_64_linux') is None
    assert Formula('x', '2').pkgVersion == '2'


def testFormularyBulkCache(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    os.makedirs(ctx.paths.api)
    fname = os.path.join(ctx.paths.api, 'formula.jws.json')
    payload = json.dumps([WGET_JSON])

    for encoded in [payload, base64.urlsafe_b64encode(
            payload.encode('utf8')).decode('ascii').rstrip('=')]:
        with open(fname, 'w') as fp:
            json.dump({'payload': encoded, 'signatures': []}, fp)
        formulary = Formulary(ctx.paths)
        assert formulary.get('homebrew/core/wget').pkgVersion == '1.25.0_1'
        assert formulary.get('wget-alias').name == 'wget'
        with pytest.raises(PackageNotFound):
            formulary.get('does-not-exist')


def testFormularyForceRefresh(tmp_path, monkeypatch) -> None:
    ctx = makeContext(str(tmp_path))
    data = dict(WGET_JSON, dependencies=[])
    cached = os.path.join(ctx.paths.api, 'formula', 'wget.json')
    os.makedirs(os.path.dirname(cached))
    with open(cached, 'w') as fp:
        json.dump(data, fp)

    urls = []  # type: list[str]

    def fakeRetrieve(url: str, filename: str, *args: object) -> None:
        urls.append(url)
        with open(filename, 'w') as fp:
            json.dump(dict(data, versions={'stable': '1.26.0'},
                           revision=0), fp)

    monkeypatch.setattr('pour.Req.urlretrieve', fakeRetrieve)
    makeKeg(ctx, 'wget', '1.25.0_1')

    ctx = ctx._replace(formulary=Formulary(ctx.paths))
    assert ctx.formulary.get('wget').pkgVersion == '1.25.0_1'
    assert InstallQueue(ctx, dryRun=True).addOutdated(['wget']) == []
    assert urls == []

    ctx = ctx._replace(formulary=Formulary(ctx.paths, force=True))
    assert InstallQueue(ctx, dryRun=True).addOutdated(['wget']) == [
        InstallQueue.Outdated('wget', ['1.25.0_1'], '1.26.0')]
    assert urls == ['https://formulae.brew.sh/api/formula/wget.json']
    assert Formulary(ctx.paths).get('wget').pkgVersion == '1.26.0'


def testBottleCacheFilename(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    formula = Formula('wget', '1.25.0', revision=1)
    assert Bottles.filename(formula, TAG, 0) == \
        'wget--1.25.0_1.arm64_sequoia.bottle.tar.gz'
    assert Bottles.filename(formula, TAG, 2) == \
        'wget--1.25.0_1.arm64_sequoia.bottle.2.tar.gz'

    url = 'https://example.org/wget.tar.gz'
    path = Bottles.cachePath(ctx.paths, url, 'x.tar.gz')
    urlHash = hashlib.sha256(url.encode('utf8')).hexdigest()
    assert path == os.path.join(ctx.paths.downloads, urlHash + '--x.tar.gz')


# -----------------------------------
#  DependencyGraph
# -----------------------------------

def testBuildFetchesEachPackageOnce() -> None:
    formulary = diamond()
    graph = DependencyGraph(formulary).build('a')
    assert sorted(formulary.calls) == ['a', 'b', 'c', 'd']
    assert graph.direct['a'] == ['b', 'c']
    assert graph.direct['d'] == []


def testBuildIncludeBuildDependencies() -> None:
    formulary = FakeFormulary(
        Formula('a', '1', dependencies=('b',), buildDependencies=('c',)),
        Formula('b', '1'), Formula('c', '1'))
    assert 'c' not in DependencyGraph(formulary).build('a')
    assert 'c' in DependencyGraph(formulary).build('a', includeBuild=True)


def testBuildUnknownDependency() -> None:
    formulary = FakeFormulary(Formula('a', '1', dependencies=('missing',)))
    with pytest.raises(PackageNotFound) as err:
        DependencyGraph(formulary).build('a')
    assert err.value.name == 'missing'


def testTopologicalSortDiamond() -> None:
    order = DependencyGraph(diamond()).build('a').topologicalSort()
    assert sorted(order) == ['a', 'b', 'c', 'd']
    assert order[0] == 'd'
    assert order[-1] == 'a'
    for name, deps in DependencyGraph(diamond()).build('a').direct.items():
        for dep in deps:
            assert order.index(dep) < order.index(name)


def testTopologicalSortIsDeterministic() -> None:
    first = DependencyGraph(diamond()).build('a').topologicalSort()
    for _ in range(5):
        assert DependencyGraph(diamond()).build('a').topologicalSort() == first


def testDetectCycle() -> None:
    formulary = FakeFormulary(
        Formula('a', '1', dependencies=('b',)),
        Formula('b', '1', dependencies=('c',)),
        Formula('c', '1', dependencies=('a',)),
        Formula('x', '1', dependencies=('a',)),
    )
    graph = DependencyGraph(formulary).build('x')  # terminates
    cycle = graph.detectCycle()
    assert cycle
    assert cycle[0] == cycle[-1]
    assert sorted(cycle[:-1]) == ['a', 'b', 'c']

    with pytest.raises(CircularDependency) as err:
        graph.topologicalSort()
    assert set(err.value.cycle) == {'a', 'b', 'c'}

    assert DependencyGraph(diamond()).build('a').detectCycle() is None


def testDetectSelfLoop() -> None:
    graph = DependencyGraph.fromMapping({'a': ['a']})
    assert graph.detectCycle() == ['a', 'a']


def testGetAllDependencies() -> None:
    graph = DependencyGraph(diamond()).build('a')
    assert graph.getAllDependencies('a') == ['b', 'c', 'd']
    assert graph.getAllDependencies('b') == ['d']
    assert graph.getAllDependencies('d') == []
    assert graph.getAllDependencies('unknown') == []


# -----------------------------------
#  Keg & Tab
# -----------------------------------

def testKegPaths(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    keg = Keg(ctx.paths, 'wget', '1.25.0_1')
    assert keg.path == os.path.join(ctx.paths.cellar, 'wget', '1.25.0_1')
    assert keg.optPath == os.path.join(ctx.paths.opt, 'wget')
    assert not keg.exists()
    makeKeg(ctx, 'wget', '1.25.0_1')
    assert keg.exists()


def testLinkOptLastWriterWins(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    old = makeKeg(ctx, 'foo', '1.0')
    new = makeKeg(ctx, 'foo', '2.0')

    os.makedirs(old.optPath)  # not a symlink, still replaced
    old.linkOpt()
    assert old.isActive()
    new.linkOpt()
    assert new.isActive() and not old.isActive()
    assert os.readlink(new.optPath) == '../Cellar/foo/2.0'
    assert LocalPackage(ctx.paths, 'foo').activeVersion == '2.0'


def testWriteTab(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    keg = makeKeg(ctx, 'foo')
    keg.writeTab(Formula('foo', '1.0'), True, ARCH)

    with open(keg.tabPath) as fp:
        data = json.load(fp)
    assert data['installed_as_dependency'] is True
    assert data['installed_on_request'] is False
    assert data['poured_from_bottle'] is True
    assert data['arch'] == 'arm64'
    assert data['built_on']['os_version'] == 'macOS 15'
    assert data['time'] > 0

    tab = keg.readTab()
    assert tab and tab.installedAsDependency and not tab.installedOnRequest


def testTabDefaults(tmp_path) -> None:
    tab = Tab.fromJson({})
    assert not tab.installedAsDependency
    assert tab.installedOnRequest
    assert tab.runtimeDependencies == ()
    assert Tab.read(str(tmp_path / 'missing.json')) is None

    first = Tab()
    data = first.toJson()
    data['runtime_dependencies'].append({'full_name': 'x'})
    data['built_on']['os'] = 'x'
    assert Tab().runtimeDependencies == ()
    assert dict(Tab().builtOn) == {}
    with pytest.raises(TypeError):
        first.builtOn['os'] = 'x'  # type: ignore[index]


def testMarkInstalledOnRequest(tmp_path) -> None:
    fname = str(tmp_path / Keg.RECEIPT)
    with open(fname, 'w') as fp:
        json.dump({'installed_on_request': False, 'custom': [1, 2]}, fp)
    assert Tab.markInstalledOnRequest(fname, True)
    with open(fname) as fp:
        assert json.load(fp) == {'installed_on_request': True, 'custom': [1, 2]}
    assert not Tab.markInstalledOnRequest(str(tmp_path / 'nope.json'), True)


def testPin(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    installFake(ctx, 'foo')
    pkg = LocalPackage(ctx.paths, 'foo')
    assert not pkg.pinned
    assert pkg.pin(True)
    assert pkg.pinned
    assert not pkg.pin(True)
    assert os.path.realpath(os.path.join(ctx.paths.pinned, 'foo')) == \
        os.path.realpath(pkg.keg('1.0').path)
    assert pkg.pin(False)
    assert not pkg.pinned


# -----------------------------------
#  Linker
# -----------------------------------

KEG_FILES = [
    'bin/foo',
    'lib/libfoo.dylib',
    'lib/pkgconfig/foo.pc',
    'lib/python3.12/site-packages/foo/__init__.py',
    'lib/python3.12/site-packages/foo/__init__.pyc',
    'share/man/man1/foo.1',
    'share/.DS_Store',
    '.brew/foo.rb',
    'README',
    Keg.RECEIPT,
]


def testLinkUnlinkInverse(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    keg = makeKeg(ctx, 'foo', files=KEG_FILES)
    os.symlink('libfoo.dylib', os.path.join(keg.path, 'lib', 'libfoo.1.dylib'))
    linker = Linker(ctx.paths)

    links = linker.link(keg)
    assert prefixLinks(ctx) == [
        'bin/foo',
        'lib/libfoo.1.dylib',
        'lib/libfoo.dylib',
        'lib/pkgconfig/foo.pc',
        'lib/python3.12/site-packages/foo/__init__.py',
        'share/man/man1/foo.1',
    ]
    assert len(links) == 6
    binFoo = os.path.join(ctx.paths.prefix, 'bin', 'foo')
    assert os.readlink(binFoo) == '../Cellar/foo/1.0/bin/foo'
    assert linker.isLinked(keg)

    removed = linker.unlink(keg)
    assert len(removed) == len(links)
    assert prefixLinks(ctx) == []
    assert os.path.isdir(os.path.join(ctx.paths.prefix, 'lib', 'pkgconfig'))
    assert not linker.isLinked(keg)


def testLinkTwiceIsNoop(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    linker = Linker(ctx.paths)
    keg = makeKeg(ctx, 'foo')
    assert len(linker.link(keg)) == 1
    assert linker.link(keg) == []

    libOnly = makeKeg(ctx, 'bar', files=['lib/libbar.a'])
    assert len(linker.link(libOnly)) == 1
    assert linker.link(libOnly) == []
    assert prefixLinks(ctx) == ['bin/foo', 'lib/libbar.a']


def testLinkConflictWithFile(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    keg = makeKeg(ctx, 'foo')
    blocker = os.path.join(ctx.paths.prefix, 'bin', 'foo')
    os.makedirs(os.path.dirname(blocker))
    with open(blocker, 'w') as fp:
        fp.write('other')

    with pytest.raises(LinkConflict) as err:
        Linker(ctx.paths).link(keg)
    assert err.value.path == blocker
    assert not os.path.islink(blocker)

    assert len(Linker(ctx.paths).link(keg, overwrite=True)) == 1
    assert os.path.islink(blocker)


def testLinkConflictWithDirectory(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    keg = makeKeg(ctx, 'foo')
    blocker = os.path.join(ctx.paths.prefix, 'bin', 'foo')
    os.makedirs(blocker)
    with pytest.raises(LinkConflict):
        Linker(ctx.paths).link(keg, overwrite=True)
    assert os.path.isdir(blocker)


def testLinkIntoSymlinkedDirectory(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    linker = Linker(ctx.paths)
    a = makeKeg(ctx, 'a', files=['share/foo-1/a.txt'])
    os.symlink('foo-1', os.path.join(a.path, 'share', 'foo'))
    linker.link(a)
    assert prefixLinks(ctx) == ['share/foo', 'share/foo-1/a.txt']

    b = makeKeg(ctx, 'b', files=['share/foo/b.txt'])
    with pytest.raises(LinkConflict) as err:
        linker.link(b)
    assert err.value.path == os.path.join(ctx.paths.prefix, 'share', 'foo')
    assert os.listdir(os.path.join(a.path, 'share', 'foo-1')) == ['a.txt']

    assert len(linker.link(b, overwrite=True)) == 1
    assert os.listdir(os.path.join(a.path, 'share', 'foo-1')) == ['a.txt']
    assert prefixLinks(ctx) == ['share/foo-1/a.txt', 'share/foo/b.txt']
    assert len(linker.unlink(b)) == 1
    assert prefixLinks(ctx) == ['share/foo-1/a.txt']


def testLinkDryRun(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    keg = makeKeg(ctx, 'foo', files=['bin/foo', 'share/doc/foo.txt'])
    links = Linker(ctx.paths).link(keg, dryRun=True)
    assert len(links) == 2
    assert not os.path.exists(os.path.join(ctx.paths.prefix, 'bin'))


def testLinkMissingKeg(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    with pytest.raises(NoSuchKeg):
        Linker(ctx.paths).link(Keg(ctx.paths, 'foo', '1.0'))


def testUnlinkKeepsOtherKegs(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    linker = Linker(ctx.paths)
    foo = makeKeg(ctx, 'foo', files=['bin/foo', 'share/man/foo.1'])
    bar = makeKeg(ctx, 'bar', files=['bin/bar', 'share/man/bar.1'])
    linker.link(foo)
    linker.link(bar)
    assert len(linker.unlink(foo)) == 2
    assert prefixLinks(ctx) == ['bin/bar', 'share/man/bar.1']
    assert linker.unlink(foo) == []


# -----------------------------------
#  InstallQueue
# -----------------------------------

def testInstallWithDependencies(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'b')
    makeBottle(ctx, 'a', deps=('b',))

    queue = InstallQueue(ctx)
    queue.add('homebrew/core/a')
    assert queue.plan() == ['b', 'a']
    results = queue.install()
    assert [(x.name, x.status) for x in results] == [
        ('b', InstallQueue.INSTALLED), ('a', InstallQueue.INSTALLED)]

    for name in ['a', 'b']:
        keg = Keg(ctx.paths, name, '1.0')
        assert keg.exists() and keg.isActive()
    tabA = Keg(ctx.paths, 'a', '1.0').readTab()
    tabB = Keg(ctx.paths, 'b', '1.0').readTab()
    assert tabA and tabA.installedOnRequest and not tabA.installedAsDependency
    assert tabB and tabB.installedAsDependency
    assert [x['full_name'] for x in tabA.runtimeDependencies] == ['b']
    assert tabA.runtimeDependencies[0]['declared_directly']
    assert prefixLinks(ctx) == ['bin/a', 'bin/b']


def testInstallAlreadyInstalled(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'b')
    makeBottle(ctx, 'a', deps=('b',))
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    queue.install()

    queue = InstallQueue(ctx)
    queue.add('a')
    assert queue.plan() == []
    assert [(x.name, x.status) for x in queue.finished] == [
        ('a', InstallQueue.ALREADY_INSTALLED)]

    queue = InstallQueue(ctx, force=True)
    queue.add('a')
    assert queue.plan() == ['b', 'a']
    queue.install()
    assert prefixLinks(ctx) == ['bin/a', 'bin/b']


def testInstallIgnoreDependencies(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'b')
    makeBottle(ctx, 'a', deps=('b',))
    queue = InstallQueue(ctx, ignoreDependencies=True)
    queue.add('a')
    assert queue.plan() == ['a']
    queue.install()
    assert not Keg(ctx.paths, 'b', '1.0').exists()


def testInstallChecksumMismatch(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'b', sha256='0' * 64)
    makeBottle(ctx, 'a', deps=('b',))
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    with pytest.raises(ChecksumMismatch):
        queue.install()

    assert [(x.name, x.status) for x in queue.finished] == [
        ('b', InstallQueue.FAILED)]
    for name in ['a', 'b']:
        keg = Keg(ctx.paths, name, '1.0')
        assert not keg.exists()
        assert not os.path.lexists(keg.optPath)
    assert not [x for x in os.listdir(ctx.paths.downloads) if '--b--' in x]


def testInstallArchiveWithWrongVersion(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'b', archiveRoot='b/9.9')
    makeBottle(ctx, 'a', deps=('b',))
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    with pytest.raises(ExtractionFailed):
        queue.install()

    assert [(x.name, x.status) for x in queue.finished] == [
        ('b', InstallQueue.FAILED)]
    for name in ['a', 'b']:
        keg = Keg(ctx.paths, name, '1.0')
        assert not keg.exists()
        assert not os.path.lexists(keg.optPath)
    assert prefixLinks(ctx) == []


def testInstallArchiveEscapingCellar(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a', archiveRoot='../outside')
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    with pytest.raises(ExtractionFailed):
        queue.install()
    assert not os.path.exists(os.path.join(ctx.paths.prefix, 'outside'))
    assert not Keg(ctx.paths, 'a', '1.0').exists()


def testExtractSkipsUnsafeMembers(tmp_path) -> None:
    cellar = str(tmp_path / 'Cellar')
    archive = writeTar(str(tmp_path / 'a.tar.gz'), {
        'a/1.0/bin/a': 'ok',
        '../evil.txt': 'x',
        'a/1.0/../../../evil2.txt': 'x',
    })
    TarPackage(archive).extract(cellar, name='a')
    assert os.listdir(cellar) == ['a']
    assert os.path.isfile(os.path.join(cellar, 'a', '1.0', 'bin', 'a'))
    assert sorted(os.listdir(tmp_path)) == ['Cellar', 'a.tar.gz']


def testTarFilter(tmp_path) -> None:
    dest = str(tmp_path)
    tar = TarPackage(str(tmp_path / 'unused.tar.gz'))

    def member(name: str, kind: bytes = tarfile.REGTYPE, link: str = '',
               mode: int = 0o644) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name)
        info.type = kind
        info.linkname = link
        info.mode = mode
        return info

    assert not tar.filter(member('/etc/passwd'), dest)
    assert not tar.filter(member('../x'), dest)
    assert not tar.filter(member('a/1.0/dev', tarfile.CHRTYPE), dest)
    assert not tar.filter(member('a/1.0/l', tarfile.SYMTYPE, '/etc'), dest)
    assert not tar.filter(
        member('a/1.0/lib/l', tarfile.SYMTYPE, '../../../../etc'), dest)
    assert tar.filter(member('a/1.0/lib/l', tarfile.SYMTYPE, '../bin'), dest)

    suid = member('a/1.0/bin/a', mode=0o4777)
    assert tar.filter(suid, dest)
    assert suid.mode == 0o755


def testInstallNoBottleForPlatform(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a', tag='x86_64_linux')
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    with pytest.raises(NoBottleForPlatform) as err:
        queue.install()
    assert err.value.tag == TAG


def testInstallArchIndependentBottle(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a', tag='all')
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    queue.install()
    assert Keg(ctx.paths, 'a', '1.0').exists()


def testInstallResolveErrors(tmp_path) -> None:
    ctx = makeContext(str(tmp_path), Formula('headonly', None))
    with pytest.raises(NoStableVersion):
        InstallQueue(ctx).add('headonly')
    with pytest.raises(PackageNotFound):
        InstallQueue(ctx).add('unknown')


def testInstallWithRevision(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a', '2.1', revision=3)
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    queue.install()
    assert LocalPackage(ctx.paths, 'a').allVersions == ['2.1_3']
    assert [x for x in os.listdir(ctx.paths.downloads)
            if x.endswith('--a--2.1_3.arm64_sequoia.bottle.tar.gz')]


def testInstallDryRun(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a')
    queue = InstallQueue(ctx, dryRun=True)
    queue.add('a')
    queue.plan()
    assert [x.status for x in queue.install()] == [InstallQueue.WOULD_INSTALL]
    assert not Keg(ctx.paths, 'a', '1.0').exists()


def testInstallKegOnlyIsNotLinked(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a', kegOnly=True)
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    queue.install()
    assert Keg(ctx.paths, 'a', '1.0').isActive()
    assert prefixLinks(ctx) == []


def testInstallRelocatesPlaceholders(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a', files={
        'lib/pkgconfig/a.pc': 'prefix=@@HOMEBREW_CELLAR@@/a/1.0\n'
                              'opt=@@HOMEBREW_PREFIX@@/opt/a\n',
    })
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    queue.install()
    with open(os.path.join(ctx.paths.cellar, 'a/1.0/lib/pkgconfig/a.pc')) as fp:
        assert fp.read() == f'prefix={ctx.paths.cellar}/a/1.0\n' \
            f'opt={ctx.paths.prefix}/opt/a\n'


def testLinkConflictDoesNotFailInstall(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a')
    blocker = os.path.join(ctx.paths.prefix, 'bin', 'a')
    os.makedirs(os.path.dirname(blocker))
    with open(blocker, 'w') as fp:
        fp.write('other')
    queue = InstallQueue(ctx)
    queue.add('a')
    queue.plan()
    assert [x.status for x in queue.install()] == [InstallQueue.INSTALLED]
    assert not os.path.islink(blocker)


# -----------------------------------
#  Upgrade
# -----------------------------------

def installAll(ctx: Context, *names: str) -> None:
    queue = InstallQueue(ctx)
    for name in names:
        queue.add(name)
    queue.plan()
    queue.install()


def testUpgrade(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'b')
    makeBottle(ctx, 'a', deps=('b',))
    installAll(ctx, 'a')

    makeBottle(ctx, 'b', '2.0')
    queue = InstallQueue(ctx)
    outdated = queue.addOutdated([])
    assert outdated == [InstallQueue.Outdated('b', ['1.0'], '2.0')]
    assert queue.plan() == ['b']
    queue.install()
    queue.removeSuperseded()

    pkg = LocalPackage(ctx.paths, 'b')
    assert pkg.allVersions == ['2.0']
    assert pkg.activeVersion == '2.0'
    assert pkg.tab.installedAsDependency  # flag survives upgrade
    assert os.readlink(os.path.join(ctx.paths.prefix, 'bin', 'b')) == \
        '../Cellar/b/2.0/bin/b'
    assert InstallQueue(ctx).addOutdated([]) == []


def testUpgradeKeepOld(tmp_path) -> None:
    for i, (keepOld, config, versions) in enumerate([
        (None, Config(), ['2.0']),
        (None, Config(keepOldVersions=True), ['1.0', '2.0']),
        (True, Config(), ['1.0', '2.0']),
        (False, Config(keepOldVersions=True), ['2.0']),
    ]):
        ctx = makeContext(str(tmp_path / str(i)))._replace(config=config)
        makeBottle(ctx, 'a')
        installAll(ctx, 'a')
        makeBottle(ctx, 'a', '2.0')
        queue = InstallQueue(ctx, keepOld=keepOld)
        queue.addOutdated(['a'])
        queue.plan()
        queue.install()
        savings = queue.removeSuperseded()
        pkg = LocalPackage(ctx.paths, 'a')
        assert pkg.allVersions == versions
        assert pkg.activeVersion == '2.0'
        assert (savings > 0) == (versions == ['2.0'])


def testUpgradeUnlinksSupersededKegs(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a')
    installAll(ctx, 'a')
    old = makeKeg(ctx, 'a', '0.9', files=['share/a-old.txt'])
    Linker(ctx.paths).link(old)
    assert prefixLinks(ctx) == ['bin/a', 'share/a-old.txt']

    makeBottle(ctx, 'a', '2.0')
    queue = InstallQueue(ctx)
    queue.addOutdated(['a'])
    queue.plan()
    queue.install()
    queue.removeSuperseded()
    assert LocalPackage(ctx.paths, 'a').allVersions == ['2.0']
    assert prefixLinks(ctx) == ['bin/a']
    assert os.path.exists(os.path.join(ctx.paths.prefix, 'bin', 'a'))


def testUpgradeSkipsPinned(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a')
    installAll(ctx, 'a')
    makeBottle(ctx, 'a', '2.0', pinned=True)
    queue = InstallQueue(ctx)
    assert queue.addOutdated([]) == []
    assert queue.plan() == []


# -----------------------------------
#  DependencyChecker & uninstall
# -----------------------------------

def chain(ctx: Context) -> None:
    ''' c -> b -> a. Only c was requested by the user. '''
    installFake(ctx, 'a', asDependency=True)
    installFake(ctx, 'b', ('a',), asDependency=True)
    installFake(ctx, 'c', ('b',))


def testFindDependents(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    chain(ctx)
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    assert checker.findDependents('a') == ['b', 'c']
    assert checker.findDependents('b') == ['c']
    assert checker.findDependents('c') == []
    assert checker.buildReverseDependencyMap(checker.installedNames()) == {
        'a': {'b'}, 'b': {'c'}}


def testFindDependentsFromReceipt(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    installFake(ctx, 'a')
    keg = makeKeg(ctx, 'legacy')
    with open(keg.tabPath, 'w') as fp:
        json.dump({'runtime_dependencies': [
            {'full_name': 'a', 'version': '1.0', 'declared_directly': True}]},
            fp)
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    assert checker.findDependents('a') == ['legacy']


def testUninstallRefusesWithDependents(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    chain(ctx)
    queue = UninstallQueue(ctx)
    queue.collect(['a'])
    with pytest.raises(RefusingToUninstall) as err:
        queue.validateQueue()
    assert err.value.dependents == ['b', 'c']
    assert 'b and c' in str(err.value)
    assert Keg(ctx.paths, 'a', '1.0').exists()


def testUninstallIgnoreDependencies(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    chain(ctx)
    queue = UninstallQueue(ctx, ignoreDependencies=True)
    queue.collect(['a'])
    queue.validateQueue()
    queue.uninstall()
    assert not os.path.exists(os.path.join(ctx.paths.cellar, 'a'))
    assert not os.path.lexists(os.path.join(ctx.paths.opt, 'a'))
    assert Keg(ctx.paths, 'b', '1.0').exists()


def testUninstallBatchWithDependents(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    chain(ctx)
    queue = UninstallQueue(ctx)
    queue.collect(['b', 'c'])
    queue.validateQueue()
    queue.uninstall()
    assert [x.name for x in LocalPackage.all(ctx.paths)] == ['a']


def testUninstallRemovesLinksAndPin(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeBottle(ctx, 'a')
    installAll(ctx, 'a')
    LocalPackage(ctx.paths, 'a').pin(True)
    assert prefixLinks(ctx) == ['bin/a']

    queue = UninstallQueue(ctx)
    queue.collect(['a'])
    queue.validateQueue()
    queue.uninstall()
    assert prefixLinks(ctx) == []
    assert not os.path.lexists(os.path.join(ctx.paths.pinned, 'a'))


def testUninstallActiveVersionOnly(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeKeg(ctx, 'a', '1.0')
    installFake(ctx, 'a', version='2.0')

    queue = UninstallQueue(ctx)
    queue.collect(['a'])
    queue.uninstall()
    assert LocalPackage(ctx.paths, 'a').allVersions == ['1.0']

    queue = UninstallQueue(ctx, force=True)
    queue.collect(['a'])
    queue.uninstall()
    assert not LocalPackage(ctx.paths, 'a').installed


def testUninstallNotInstalled(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    with pytest.raises(NoSuchKeg):
        UninstallQueue(ctx).collect(['nothing'])


def testLeaves(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    chain(ctx)
    installFake(ctx, 'd', asDependency=True)
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    assert checker.leaves() == ['c', 'd']
    assert checker.leaves(onRequest=True) == ['c']
    assert checker.leaves(asDependency=True) == ['d']
    with pytest.raises(UsageError):
        checker.leaves(onRequest=True, asDependency=True)


def testLeavesMissingReceipt(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    makeKeg(ctx, 'noreceipt')
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    assert checker.leaves(onRequest=True) == ['noreceipt']
    assert checker.leaves(asDependency=True) == []


def testAutoremove(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    chain(ctx)
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    assert checker.autoremove() == []

    queue = UninstallQueue(ctx)
    queue.collect(['c'])
    queue.validateQueue()
    queue.uninstall()
    assert checker.autoremoveCandidates() == ['b', 'a']
    assert checker.autoremove(dryRun=True) == ['b', 'a']
    assert Keg(ctx.paths, 'a', '1.0').exists()
    assert checker.autoremove() == ['b', 'a']
    assert LocalPackage.all(ctx.paths) == []


def testCaskDependencyKeepsFormula(tmp_path) -> None:
    ctx = makeContext(str(tmp_path))
    installFake(ctx, 'a', asDependency=True)
    meta = os.path.join(ctx.paths.caskroom, 'app', '.metadata', '1.0',
                        '20240101000000.000', 'Casks')
    os.makedirs(meta)
    with open(os.path.join(meta, 'app.json'), 'w') as fp:
        json.dump({'token': 'app', 'depends_on': {'formula': ['a']}}, fp)

    checker = DependencyChecker(ctx.paths, ctx.formulary)
    assert checker.buildReverseDependencyMap(['a']) == {'a': {'cask:app'}}
    assert checker.leaves() == []
    assert checker.autoremove() == []
