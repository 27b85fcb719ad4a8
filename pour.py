#!/usr/bin/env python3
# https://docs.brew.sh/Manpage#commands
# https://docs.brew.sh/Formula-Cookbook#homebrew-terminology
# https://docs.brew.sh/Bottles
# https://docs.brew.sh/Querying-Brew
'''
Install Homebrew bottles into a Homebrew-compatible prefix
'''
import os
import sys  # stdout, stderr, stdout.isatty()
import glob  # cask metadata
import json  # load, loads, dump
import math  # ceil
import base64  # urlsafe_b64decode
import shutil  # rmtree, get_terminal_size
import hashlib  # sha256
import platform  # machine, mac_ver, release
from datetime import datetime  # now()
from io import StringIO  # Log summary
from types import MappingProxyType  # Tab defaults
from tarfile import TarError, TarInfo, open as openTarfile
from urllib import request as Req  # build_opener, install_opener, urlretrieve
from urllib.error import HTTPError, URLError
from configparser import ConfigParser as IniFile
from functools import cached_property
from argparse import (
    ArgumentParser, Action, BooleanOptionalAction,
    Namespace as ArgParams,
    _ActionsContainer as ArgsContainer,
    _MutuallyExclusiveGroup as ArgsXorGroup,
)
from typing import (
    Any, Callable, Iterable, Mapping, NamedTuple, Optional, TypedDict
)


class Env:
    IS_TTY = sys.stdout.isatty()
    VERSION = '0.4.0'


def main() -> None:
    args = parseArgs()
    Log.LEVEL = 3 if args.verbose else Log.LEVEL - args.quiet
    ctx = Context.init(tag=getattr(args, 'arch', None))
    try:
        args.func(args, ctx)
    except BrewError as e:
        Log.error(e)
        exit(1)


# -----------------------------------
#  CLI functions
# -----------------------------------

# https://docs.brew.sh/Manpage#install-options-formulacask-
def cli_install(args: ArgParams, ctx: 'Context') -> None:
    ''' Install a package and all of its runtime dependencies. '''
    queue = InstallQueue(
        ctx, force=args.force, dryRun=args.dry,
        ignoreDependencies=args.ignore_dependencies,
        includeBuild=args.include_build, skipLink=args.skip_link)
    Log.info('==> Resolving dependencies ...')
    for name in args.packages:
        queue.add(name)
    if not queue.plan():
        return
    Log.info('==> Installing', ', '.join(queue.installQueue))
    queue.install()
    if not args.dry:
        done = [x for x in queue.finished if x.status == InstallQueue.INSTALLED]
        Log.main(f'==> Installed {len(done)} package(s)')


# https://docs.brew.sh/Manpage#outdated-options-formulacask-
def cli_outdated(args: ArgParams, ctx: 'Context') -> None:
    ''' List installed packages with a newer version available. '''
    ctx = ctx._replace(formulary=Formulary(ctx.paths, force=args.force))
    queue = InstallQueue(ctx, dryRun=True)
    for item in queue.addOutdated(args.packages):
        if Log.LEVEL > 1:
            Log.main(f'{item.name} ({", ".join(item.installed)}) < {item.current}')
        else:
            Log.main(item.name)


# https://docs.brew.sh/Manpage#upgrade-options-installed_formulainstalled_cask-
def cli_upgrade(args: ArgParams, ctx: 'Context') -> None:
    ''' Upgrade outdated packages (all if none given). '''
    ctx = ctx._replace(formulary=Formulary(ctx.paths, force=args.force))
    queue = InstallQueue(
        ctx, dryRun=args.dry, ignoreDependencies=args.ignore_dependencies,
        keepOld=args.keep_old or None)
    outdated = queue.addOutdated(args.packages)
    if not outdated:
        Log.info('==> Nothing to upgrade')
        return
    Log.info(f'==> Upgrading {len(outdated)} outdated package(s):')
    for item in outdated:
        Log.info(f'{item.name} {", ".join(item.installed)} -> {item.current}')
    if not queue.plan():
        return
    queue.install()

    if not queue.keepOld:
        savings = queue.removeSuperseded()
        Log.main(Txt.freedDiskSpace(savings, dryRun=args.dry))


# https://docs.brew.sh/Manpage#uninstall-remove-rm-options-installed_formulainstalled_cask-
def cli_uninstall(args: ArgParams, ctx: 'Context') -> None:
    ''' Remove a package (and its symlinks) from the cellar. '''
    queue = UninstallQueue(
        ctx, force=args.force, ignoreDependencies=args.ignore_dependencies)
    queue.collect(args.packages)
    queue.validateQueue()
    savings = queue.uninstall(dryRun=args.dry)
    Log.main(Txt.freedDiskSpace(savings, dryRun=args.dry))


# https://docs.brew.sh/Manpage#link-ln-options-installed_formula-
def cli_link(args: ArgParams, ctx: 'Context') -> None:
    ''' Symlink all of a package's files into the prefix. '''
    pkg = LocalPackage(ctx.paths, normalizeName(args.package))
    pkg.assertInstalled()
    keg = pkg.activeKeg or pkg.latestKeg

    if not args.force:
        try:
            kegOnly = ctx.formulary.get(pkg.name).kegOnly
        except PackageNotFound:
            kegOnly = False
        if kegOnly:
            raise UsageError(f'{pkg.name} is keg-only. Use -f to force linking.')

    linker = Linker(ctx.paths)
    if args.dry:
        Log.main('Would link:' if not args.overwrite else 'Would remove:')
    links = linker.link(
        keg, dryRun=args.dry, overwrite=args.overwrite,
        verbose=Log.LEVEL >= 3)
    if not args.dry:
        if not keg.isActive():
            keg.linkOpt()
        if links:
            Log.main(f'Linking {keg.path}... {len(links)} symlinks created.')


# https://docs.brew.sh/Manpage#unlink---dry-run-installed_formula-
def cli_unlink(args: ArgParams, ctx: 'Context') -> None:
    ''' Remove a package's symlinks from the prefix. '''
    pkg = LocalPackage(ctx.paths, normalizeName(args.package))
    pkg.assertInstalled()
    linker = Linker(ctx.paths)
    if args.dry:
        Log.main('Would remove:')
    for version in pkg.allVersions:
        keg = pkg.keg(version)
        links = linker.unlink(keg, dryRun=args.dry, verbose=Log.LEVEL >= 3)
        if links and not args.dry:
            Log.main(f'Unlinking {keg.path}... {len(links)} symlinks removed.')


# https://docs.brew.sh/Manpage#autoremove---dry-run
def cli_autoremove(args: ArgParams, ctx: 'Context') -> None:
    ''' Uninstall packages that were only installed as a dependency. '''
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    removed = checker.autoremove(dryRun=args.dry)
    if not removed:
        Log.info('==> Nothing to autoremove')
        return
    Log.main('==> {} {} unneeded package(s):'.format(
        'Would autoremove' if args.dry else 'Autoremoved', len(removed)))
    Log.main(Txt.prettyList(removed))


# https://docs.brew.sh/Manpage#leaves---installed-on-request---installed-as-dependency
def cli_leaves(args: ArgParams, ctx: 'Context') -> None:
    ''' List installed packages that are not dependencies of another. '''
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    leaves = checker.leaves(onRequest=args.installed_on_request,
                            asDependency=args.installed_as_dependency)
    Utils.printInColumns(leaves,
                         plainList=not Env.IS_TTY or args.__dict__['1'])


# https://docs.brew.sh/Manpage#deps-options-formulacask-
def cli_deps(args: ArgParams, ctx: 'Context') -> None:
    ''' Show dependencies of a package. '''
    if args.installed:
        graph = DependencyChecker(ctx.paths, ctx.formulary).installedGraph()
        if unknown := [x for x in args.packages if x not in graph]:
            raise NoSuchKeg(unknown[0], os.path.join(ctx.paths.cellar, unknown[0]))
    else:
        graph = DependencyGraph(ctx.formulary)
        graph.buildAll(args.packages, includeBuild=args.include_build)
    roots = [normalizeName(x) for x in args.packages]
    order = graph.topologicalSort()  # also rejects cycles

    if args.dot:
        graph.dotGraph(roots)
    elif args.tree:
        graph.printTree(roots)
    elif args.topological:
        closure = set(graph.unionAll(roots)).difference(roots)
        for name in order:
            if name in closure:
                print(name)
    else:
        for name in roots:
            deps = graph.getAllDependencies(name)
            if len(roots) > 1:
                print(name + ': ' + ' '.join(deps))
            else:
                Utils.printInColumns(deps, plainList=True)


# https://docs.brew.sh/Manpage#uses-options-formula-
def cli_uses(args: ArgParams, ctx: 'Context') -> None:
    ''' Show installed packages that depend on a package. '''
    checker = DependencyChecker(ctx.paths, ctx.formulary)
    reverse = checker.buildReverseDependencyMap(checker.installedNames())
    graph = DependencyGraph.fromMapping(reverse)
    for name in args.packages:
        name = normalizeName(name)
        if args.recursive:
            users = graph.getAllDependencies(name)
        else:
            users = sorted(reverse.get(name, []))
        if len(args.packages) > 1:
            print(name + ': ' + ' '.join(users))
        else:
            Utils.printInColumns(users, plainList=True)


# https://docs.brew.sh/Manpage#list-ls-options-installed_formulainstalled_cask-
def cli_list(args: ArgParams, ctx: 'Context') -> None:
    ''' List installed packages. '''
    rv = []
    for pkg in LocalPackage.all(ctx.paths):
        if args.pinned and not pkg.pinned:
            continue
        if args.versions:
            rv.append(f'{pkg.name} {" ".join(pkg.allVersions)}')
        else:
            rv.append(pkg.name)
    Utils.printInColumns(
        rv, plainList=args.versions or not Env.IS_TTY or args.__dict__['1'])


# https://docs.brew.sh/Manpage#pin-installed_formula-
def cli_pin(args: ArgParams, ctx: 'Context') -> None:
    ''' Prevent specified packages from being upgraded. '''
    for pkg in LocalPackage.all(ctx.paths, args.packages):
        if pkg.pin(True):
            Log.info('pinned', pkg.name)
        else:
            Log.warn(f'{pkg.name} already pinned')


# https://docs.brew.sh/Manpage#unpin-installed_formula-
def cli_unpin(args: ArgParams, ctx: 'Context') -> None:
    ''' Allow specified packages to be upgraded again. '''
    for pkg in LocalPackage.all(ctx.paths, args.packages):
        if pkg.pin(False):
            Log.info('unpinned', pkg.name)
        else:
            Log.warn(f'{pkg.name} not pinned')


# https://docs.brew.sh/Manpage#tab-options-installed_formulainstalled_cask-
def cli_tab(args: ArgParams, ctx: 'Context') -> None:
    ''' Edit the install receipt of installed packages. '''
    if args.installed_on_request is None:
        raise UsageError('no flag given. '
                         'Use --[no-]installed-on-request to edit receipts.')
    for pkg in LocalPackage.all(ctx.paths, args.packages):
        keg = pkg.activeKeg or pkg.latestKeg
        if Tab.markInstalledOnRequest(keg.tabPath, args.installed_on_request):
            Log.info(f'{pkg.name}: installed_on_request =',
                     str(args.installed_on_request).lower())
        else:
            Log.warn(f'{pkg.name} has no install receipt')


# -----------------------------------
#  CLI
# -----------------------------------

def parseArgs() -> ArgParams:
    cli = Cli(description=__doc__)
    cli.arg_bool('-v', '--verbose', help='increase verbosity')
    cli.arg('-q', '--quiet', action='count', default=0, help='''
        reduce verbosity (-q up to -qqq)''')
    cli.arg('--version', action='version', version=f'%(prog)s {Env.VERSION}')

    # install
    cmd = cli.subcommand('install', cli_install, aliases=['add'])
    cmd.arg('packages', nargs='+', help='Package name(s)')
    cmd.arg_bool('-f', '--force', help='''
        Reinstall packages even if they are already installed''')
    cmd.arg_bool('--ignore-dependencies', help='''
        Do not install any dependencies''')
    cmd.arg_bool('--include-build', help='''
        Also install build-time dependencies''')
    cmd.arg_bool('--skip-link', help='Do not link files into the prefix')
    cmd.arg_bool('-n', '--dry-run', dest='dry', help='''
        Show which packages would be installed''')
    cmd.arg('--arch', help='''Install bottles for the given platform tag
        (e.g. 'arm64_sequoia', 'x86_64_linux')''')

    # outdated
    cmd = cli.subcommand('outdated', cli_outdated)
    cmd.arg('packages', nargs='*', help='Package name(s). Default: all')
    cmd.arg_bool('-f', '--force', help='''
        Fetch latest package metadata (ignore cached json)''')

    # upgrade
    cmd = cli.subcommand('upgrade', cli_upgrade)
    cmd.arg('packages', nargs='*', help='Package name(s). Default: all')
    cmd.arg_bool('-f', '--force', help='''
        Fetch latest package metadata (ignore cached json)''')
    cmd.arg_bool('--keep-old', help='''
        Do not remove superseded versions (see also config.ini)''')
    cmd.arg_bool('--ignore-dependencies', help='''
        Do not install new dependencies''')
    cmd.arg_bool('-n', '--dry-run', dest='dry', help='''
        Show which packages would be upgraded''')
    cmd.arg('--arch', help='''Upgrade using bottles for the given platform tag
        (e.g. 'arm64_sequoia', 'x86_64_linux')''')

    # uninstall
    cmd = cli.subcommand('uninstall', cli_uninstall, aliases=['remove', 'rm'])
    cmd.arg('packages', nargs='+', help='Package name(s)')
    cmd.arg_bool('-f', '--force', help='''
        Remove all installed versions and skip the dependents check''')
    cmd.arg_bool('--ignore-dependencies', help='''
        Remove even if other installed packages depend on it''')
    cmd.arg_bool('-n', '--dry-run', dest='dry', help='''
        Show what would be removed''')

    # link
    cmd = cli.subcommand('link', cli_link, aliases=['ln'])
    cmd.arg('package', help='Package name')
    cmd.arg_bool('--overwrite', help='''
        Delete conflicting files in the prefix (never directories)''')
    cmd.arg_bool('-f', '--force', help='Allow linking keg-only packages')
    cmd.arg_bool('-n', '--dry-run', dest='dry', help='''
        List files which would be linked (or deleted with --overwrite)''')

    # unlink
    cmd = cli.subcommand('unlink', cli_unlink)
    cmd.arg('package', help='Package name')
    cmd.arg_bool('-n', '--dry-run', dest='dry', help='''
        List files which would be unlinked''')

    # autoremove
    cmd = cli.subcommand('autoremove', cli_autoremove)
    cmd.arg_bool('-n', '--dry-run', dest='dry', help='''
        List what would be uninstalled''')

    # leaves
    cmd = cli.subcommand('leaves', cli_leaves)
    grp = cmd.xor_group()
    grp.arg_bool('-r', '--installed-on-request', help='''
        Only list leaves that were manually installed''')
    grp.arg_bool('-p', '--installed-as-dependency', help='''
        Only list leaves that were installed as a dependency''')
    cmd.arg_bool('-1', help='''
        Force output to be one entry per line.
        This is the default when output is not to a terminal.''')

    # deps
    cmd = cli.subcommand('deps', cli_deps)
    cmd.arg('packages', nargs='+', help='Package name(s)')
    cmd.arg_bool('--include-build', help='Include build-time dependencies')
    cmd.arg_bool('--installed', help='''
        Use dependencies of installed packages instead of online data''')
    grp = cmd.xor_group()
    grp.arg_bool('--tree', help='Show dependencies as a tree')
    grp.arg_bool('--dot', help='Show dependencies in DOT graph format')
    grp.arg_bool('-t', '--topological', help='''
        Sort dependencies in install order''')

    # uses
    cmd = cli.subcommand('uses', cli_uses)
    cmd.arg('packages', nargs='+', help='Package name(s)')
    cmd.arg_bool('--recursive', help='''
        Resolve more than one level of dependents''')

    # list
    cmd = cli.subcommand('list', cli_list, aliases=['ls'])
    cmd.arg_bool('--versions', help='Include version numbers in list')
    cmd.arg_bool('--pinned', help='Only show pinned packages')
    cmd.arg_bool('-1', help='''
        Force output to be one entry per line.
        This is the default when output is not to a terminal.''')

    # pin, unpin
    cmd = cli.subcommand('pin', cli_pin)
    cmd.arg('packages', nargs='+', help='Package name(s)')
    cmd = cli.subcommand('unpin', cli_unpin)
    cmd.arg('packages', nargs='+', help='Package name(s)')

    # tab
    cmd = cli.subcommand('tab', cli_tab)
    cmd.arg('packages', nargs='+', help='Package name(s)')
    cmd.arg('--installed-on-request', action=BooleanOptionalAction,
            help='Mark packages as installed on request (or not)')
    return cli.parse()


# -----------------------------------
#  Cli Helper
# -----------------------------------

class CliQuickArg(ArgsContainer):
    def arg(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs)

    def arg_bool(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs, action='store_true')

    def xor_group(self, **kwargs: Any) -> 'CliXorGroup':
        group = CliXorGroup(self, **kwargs)
        self._mutually_exclusive_groups.append(group)
        return group


class CliXorGroup(ArgsXorGroup, CliQuickArg):
    pass


class Cli(ArgumentParser, CliQuickArg):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.set_defaults(func=lambda *_: self.print_help(sys.stdout))

    def subcommand(
        self, name: str, fn: 'Callable[[ArgParams, Context], None]',
        *args: Any, meta: str = 'command', **kwargs: Any
    ) -> 'Cli':
        if not hasattr(self, 'sub_parser'):
            self.sub_parser = self.add_subparsers(metavar=meta, dest=meta)

        desc = fn.__doc__ or ''
        cmd = self.sub_parser.add_parser(
            name, *args, help=desc, description=desc.strip(), **kwargs)
        cmd.set_defaults(func=fn)
        return cmd

    def parse(self) -> ArgParams:
        return self.parse_args()


# -----------------------------------
#  Errors
# -----------------------------------

class BrewError(Exception):
    ''' Aborts the current command. Printed without traceback. '''


class UsageError(BrewError):
    pass


class PackageNotFound(BrewError):
    def __init__(self, name: str) -> None:
        super().__init__(f'No available formula with the name "{name}".')
        self.name = name


class NoStableVersion(BrewError):
    def __init__(self, name: str) -> None:
        super().__init__(f'{name} has no stable version. '
                         'Only stable bottles can be installed.')
        self.name = name


class NoBottleForPlatform(BrewError):
    def __init__(self, name: str, tag: str, available: 'list[str]') -> None:
        msg = f'No bottle of {name} available for platform "{tag}".'
        if available:
            msg += '\nAvailable platforms: ' + ', '.join(available)
        super().__init__(msg)
        self.name = name
        self.tag = tag


class DownloadError(BrewError):
    def __init__(self, url: str, reason: str, *, status: int = 0) -> None:
        super().__init__(f'Could not download {url} ({reason})')
        self.url = url
        self.status = status


class ChecksumMismatch(BrewError):
    def __init__(self, name: str, path: str, expected: str, actual: str) -> None:
        super().__init__(f'SHA256 mismatch for {name}\n'
                         f'Expected: {expected}\n'
                         f'  Actual: {actual}\n'
                         f'    File: {path}')
        self.name = name
        self.path = path


class ExtractionFailed(BrewError):
    def __init__(self, name: str, path: str, reason: str) -> None:
        super().__init__(f'Failed to pour {name} into {path}: {reason}')
        self.name = name
        self.path = path


class CircularDependency(BrewError):
    def __init__(self, cycle: 'list[str]') -> None:
        super().__init__('Circular dependency: ' + ' -> '.join(cycle))
        self.cycle = cycle


class RefusingToUninstall(BrewError):
    def __init__(self, name: str, path: str, dependents: 'list[str]') -> None:
        super().__init__(
            f'Refusing to uninstall {path}\n'
            f'because it is required by {Txt.joinNames(dependents)}, '
            f'which {"is" if len(dependents) == 1 else "are"} '
            'currently installed.\n'
            'You can override this and force removal with:\n'
            f'  pour uninstall --ignore-dependencies {name}')
        self.name = name
        self.dependents = dependents


class LinkConflict(BrewError):
    def __init__(self, name: str, src: str, path: str, *, isDir: bool) -> None:
        msg = f'Could not symlink {src}\nTarget {path} '
        if isDir:
            msg += 'is a directory.'
        else:
            msg += ('already exists. To force the link and overwrite all '
                    'conflicting files:\n'
                    f'  pour link --overwrite {name}')
        super().__init__(msg)
        self.name = name
        self.path = path


class NoSuchKeg(BrewError):
    def __init__(self, name: str, path: str) -> None:
        super().__init__(f'{name} is not installed (no such keg: {path})')
        self.name = name
        self.path = path


# -----------------------------------
#  System configuration
# -----------------------------------

class Paths(NamedTuple):
    prefix: str
    cellar: str
    cache: str
    caskroom: str

    @property
    def opt(self) -> str:
        return os.path.join(self.prefix, 'opt')

    @property
    def pinned(self) -> str:
        return os.path.join(self.prefix, 'var', 'homebrew', 'pinned')

    @property
    def downloads(self) -> str:
        return os.path.join(self.cache, 'downloads')

    @property
    def api(self) -> str:
        return os.path.join(self.cache, 'api')

    @staticmethod
    def detect(env: 'Mapping[str, str]|None' = None) -> 'Paths':
        ''' Read `HOMEBREW_*` variables, fallback to platform defaults '''
        env = os.environ if env is None else env
        prefix = env.get('HOMEBREW_PREFIX') or Paths.defaultPrefix()
        if sys.platform == 'darwin':
            cache = os.path.expanduser('~/Library/Caches/Homebrew')
        else:
            xdg = env.get('XDG_CACHE_HOME') or os.path.expanduser('~/.cache')
            cache = os.path.join(xdg, 'Homebrew')
        return Paths(
            prefix=prefix.rstrip('/'),
            cellar=(env.get('HOMEBREW_CELLAR')
                    or os.path.join(prefix, 'Cellar')).rstrip('/'),
            cache=(env.get('HOMEBREW_CACHE') or cache).rstrip('/'),
            caskroom=(env.get('HOMEBREW_CASKROOM')
                      or os.path.join(prefix, 'Caskroom')).rstrip('/'),
        )

    @staticmethod
    def defaultPrefix() -> str:
        if sys.platform == 'darwin':
            if platform.machine() == 'arm64':
                return '/opt/homebrew'
            return '/usr/local'
        return '/home/linuxbrew/.linuxbrew'

    def shortPath(self, path: str) -> str:
        ''' Return path relative to prefix (if inside) '''
        if path.startswith(self.prefix + '/'):
            return os.path.relpath(path, self.prefix)
        return path


class Arch(NamedTuple):
    isMac: bool
    isArm: bool
    osVersion: str  # "15", "10.15" (macOS) or kernel release (linux)
    tagOverride: str = ''

    ALL_OS = {
        'yosemite': '10.10',
        'el_capitan': '10.11',
        'sierra': '10.12',
        'high_sierra': '10.13',
        'mojave': '10.14',
        'catalina': '10.15',
        'big_sur': '11',
        'monterey': '12',
        'ventura': '13',
        'sonoma': '14',
        'sequoia': '15',
        'tahoe': '26',
    }

    @staticmethod
    def detect(tag: 'str|None' = None) -> 'Arch':
        isMac = sys.platform == 'darwin'
        return Arch(
            isMac=isMac,
            isArm=platform.machine() in ('arm64', 'aarch64'),
            osVersion=Arch.macOSVersion() if isMac else platform.release(),
            tagOverride=tag or '',
        )

    @staticmethod
    def macOSVersion() -> str:
        major, minor, *_ = (platform.mac_ver()[0] + '.0').split('.')
        return ('10.' + minor) if major == '10' else major

    @property
    def cpu(self) -> str:
        return 'arm64' if self.isArm else 'x86_64'

    @property
    def osName(self) -> str:
        if not self.isMac:
            return 'linux'
        return {v: k for k, v in Arch.ALL_OS.items()}.get(
            self.osVersion, 'unknown')

    @property
    def bottleTag(self) -> str:
        ''' e.g., "arm64_sequoia", "sequoia", "x86_64_linux" '''
        if self.tagOverride:
            return self.tagOverride
        if not self.isMac:
            return self.cpu + '_linux'
        return ('arm64_' if self.isArm else '') + self.osName

    def builtOn(self) -> 'dict[str, str]':
        return {
            'os': 'Macintosh' if self.isMac else 'Linux',
            'os_version': ('macOS ' if self.isMac else 'Linux ')
            + self.osVersion,
            'cpu_family': self.cpu,
        }


# -----------------------------------
#  Config
# -----------------------------------

class Config(NamedTuple):
    linkOnInstall: bool = True
    keepOldVersions: bool = False

    DEFAULT = '''
[install]
; whether install should link files into the prefix (if not keg-only)
link = yes  ; default: yes

[upgrade]
; whether upgrade should keep superseded versions in the cellar
keep_old = no  ; default: no
'''

    @staticmethod
    def location(env: 'Mapping[str, str]|None' = None) -> str:
        env = os.environ if env is None else env
        if fname := env.get('POUR_CONFIG'):
            return fname
        base = env.get('XDG_CONFIG_HOME') or os.path.expanduser('~/.config')
        return os.path.join(base, 'pour', 'config.ini')

    @staticmethod
    def load(fname: str) -> 'Config':
        if not os.path.exists(fname):
            os.makedirs(os.path.dirname(fname) or '.', exist_ok=True)
            with open(fname, 'w') as fp:
                fp.write(Config.DEFAULT)
        ini = IniFile(inline_comment_prefixes=(';', '#'))
        ini.read(fname)
        return Config(
            linkOnInstall=ini.getboolean('install', 'link', fallback=True),
            keepOldVersions=ini.getboolean(
                'upgrade', 'keep_old', fallback=False),
        )


class Context(NamedTuple):
    paths: Paths
    config: Config
    arch: Arch
    formulary: 'Formulary'

    @staticmethod
    def init(*, tag: 'str|None' = None) -> 'Context':
        ''' Resolve environment once, at process start '''
        paths = Paths.detect()
        Log.debug('[DEBUG] prefix:', paths.prefix, 'cellar:', paths.cellar)
        return Context(
            paths=paths,
            config=Config.load(Config.location()),
            arch=Arch.detect(tag),
            formulary=Formulary(paths),
        )


# -----------------------------------
#  Formula
# -----------------------------------

def normalizeName(name: str) -> str:
    ''' Strip tap prefix. "homebrew/core/wget" -> "wget" '''
    return name.rsplit('/', 1)[-1]


class BottleFile(NamedTuple):
    url: str
    sha256: str


class Bottle(NamedTuple):
    rebuild: int
    files: 'dict[str, BottleFile]'  # platform tag -> archive

    def forTag(self, tag: str) -> 'tuple[str, BottleFile]|None':
        ''' Lookup archive for platform, fallback to arch-independent "all" '''
        if tag in self.files:
            return tag, self.files[tag]
        if 'all' in self.files:
            return 'all', self.files['all']
        return None


class Formula(NamedTuple):
    name: str
    stableVersion: Optional[str]
    revision: int = 0
    dependencies: 'tuple[str, ...]' = ()
    buildDependencies: 'tuple[str, ...]' = ()
    testDependencies: 'tuple[str, ...]' = ()
    recommendedDependencies: 'tuple[str, ...]' = ()
    optionalDependencies: 'tuple[str, ...]' = ()
    bottle: Optional[Bottle] = None
    pinned: bool = False
    kegOnly: bool = False
    fullName: str = ''

    @property
    def pkgVersion(self) -> str:
        ''' Version with revision suffix, e.g., "1.2.3_1" '''
        assert self.stableVersion, f'{self.name} has no stable version'
        if self.revision > 0:
            return f'{self.stableVersion}_{self.revision}'
        return self.stableVersion

    def dependencyList(
        self, *, build: bool = False, test: bool = False,
        recommended: bool = False, optional: bool = False,
    ) -> 'list[str]':
        ''' Runtime dependencies, plus other kinds if requested (in order) '''
        rv = [normalizeName(x) for x in self.dependencies]
        for flag, deps in (
            (build, self.buildDependencies),
            (test, self.testDependencies),
            (recommended, self.recommendedDependencies),
            (optional, self.optionalDependencies),
        ):
            if flag:
                rv += [x for x in map(normalizeName, deps) if x not in rv]
        return rv

    @staticmethod
    def fromJson(data: 'ApiBrew.FormulaJson') -> 'Formula':
        bottle = None
        if stable := (data.get('bottle') or {}).get('stable'):
            bottle = Bottle(
                rebuild=stable.get('rebuild', 0),
                files={tag: BottleFile(x['url'], x['sha256'])
                       for tag, x in stable.get('files', {}).items()})
        return Formula(
            name=data['name'],
            stableVersion=(data.get('versions') or {}).get('stable'),
            revision=data.get('revision', 0),
            dependencies=tuple(data.get('dependencies', [])),
            buildDependencies=tuple(data.get('build_dependencies', [])),
            testDependencies=tuple(data.get('test_dependencies', [])),
            recommendedDependencies=tuple(
                data.get('recommended_dependencies', [])),
            optionalDependencies=tuple(data.get('optional_dependencies', [])),
            bottle=bottle,
            kegOnly=bool(data.get('keg_only')),
            fullName=data.get('full_name') or data['name'],
        )


class Formulary:
    '''
    Formula lookup. Uses the bulk API cache (`api/formula.jws.json`) if
    present, otherwise queries formulae.brew.sh (one cached json per formula).
    '''

    def __init__(self, paths: Paths, *, force: bool = False) -> None:
        self.paths = paths
        self.force = force
        self._loaded = {}  # type: dict[str, Formula]

    def get(self, name: str) -> Formula:
        ''' Raises `PackageNotFound` '''
        name = normalizeName(name)
        if formula := self._loaded.get(name):
            return formula
        data = self._lookup(name)
        if data is None:
            raise PackageNotFound(name)
        formula = Formula.fromJson(data)
        formula = formula._replace(pinned=os.path.lexists(
            os.path.join(self.paths.pinned, formula.name)))
        self._loaded[name] = formula
        return formula

    @cached_property
    def _bulk(self) -> 'dict[str, ApiBrew.FormulaJson]|None':
        fname = os.path.join(self.paths.api, 'formula.jws.json')
        if not os.path.isfile(fname):
            return None
        Log.debug('[DEBUG] load formula cache', fname)
        rv = {}  # type: dict[str, ApiBrew.FormulaJson]
        for data in ApiBrew.readJws(fname):
            rv[data['name']] = data
            for alias in data.get('aliases', []):
                rv.setdefault(alias, data)
        return rv

    def _lookup(self, name: str) -> 'ApiBrew.FormulaJson|None':
        if self._bulk is not None:
            return self._bulk.get(name)
        try:
            return ApiBrew.formula(self.paths, name, force=self.force)
        except DownloadError as e:
            if e.status == 404:
                return None
            raise


# -----------------------------------
#  DependencyGraph
# -----------------------------------

class DependencyGraph:
    '''
    Package name -> ordered list of direct dependencies.
    Filled by `build()` (online data) or `fromMapping()` (local state).
    '''

    def __init__(self, formulary: 'Formulary|None' = None) -> None:
        self.formulary = formulary
        self.direct = {}  # type: dict[str, list[str]]

    def __contains__(self, name: str) -> bool:
        return name in self.direct

    def __len__(self) -> int:
        return len(self.direct)

    @staticmethod
    def fromMapping(mapping: 'Mapping[str, Iterable[str]]') \
            -> 'DependencyGraph':
        rv = DependencyGraph()
        for key, deps in mapping.items():
            rv.direct[key] = sorted(deps)
        return rv

    def build(self, root: str, *, includeBuild: bool = False) \
            -> 'DependencyGraph':
        ''' Fetch `root` and everything it depends on. Cycle-safe. '''
        return self.buildAll([root], includeBuild=includeBuild)

    def buildAll(self, roots: 'list[str]', *, includeBuild: bool = False) \
            -> 'DependencyGraph':
        assert self.formulary, 'build() requires a formulary'
        visited = set(self.direct)
        for root in roots:
            self._expand(normalizeName(root), includeBuild, visited)
        return self

    def _expand(self, name: str, includeBuild: bool, visited: 'set[str]') \
            -> None:
        if name in visited:
            return
        visited.add(name)
        formula = self.formulary.get(name)
        deps = formula.dependencyList(build=includeBuild)
        self.direct[name] = deps
        for dep in deps:
            self._expand(dep, includeBuild, visited)

    def detectCycle(self) -> 'list[str]|None':
        ''' Return the first cycle found, e.g., `[a, b, c, a]` '''
        done = set()  # type: set[str]
        for start in self.direct:
            if start not in done:
                if cycle := self._findCycle(start, [], set(), done):
                    return cycle
        return None

    def _findCycle(
        self, node: str, path: 'list[str]', onPath: 'set[str]',
        done: 'set[str]',
    ) -> 'list[str]|None':
        path.append(node)
        onPath.add(node)
        for dep in self.direct.get(node, []):
            if dep in onPath:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                if cycle := self._findCycle(dep, path, onPath, done):
                    return cycle
        path.pop()
        onPath.discard(node)
        done.add(node)
        return None

    def topologicalSort(self) -> 'list[str]':
        ''' Dependencies first. Raises `CircularDependency` '''
        if cycle := self.detectCycle():
            raise CircularDependency(cycle)

        inDegree = {}  # type: dict[str, int]  # number of dependents
        for name, deps in self.direct.items():
            inDegree.setdefault(name, 0)
            for dep in deps:
                inDegree[dep] = inDegree.get(dep, 0) + 1

        queue = [x for x, num in inDegree.items() if num == 0]
        order = []
        while queue:
            name = queue.pop(0)
            order.append(name)
            for dep in self.direct.get(name, []):
                inDegree[dep] -= 1
                if inDegree[dep] == 0:
                    queue.append(dep)

        assert len(order) == len(inDegree), 'unordered nodes in acyclic graph'
        order.reverse()
        return order

    def getAllDependencies(self, name: str) -> 'list[str]':
        ''' Follow branches and retrieve all values (sorted) '''
        rv = set()  # type: set[str]
        queue = list(self.direct.get(name, []))
        while queue:
            dep = queue.pop(0)
            if dep not in rv:
                rv.add(dep)
                queue.extend(self.direct.get(dep, []))
        return sorted(rv)

    def unionAll(self, keys: 'list[str]') -> 'list[str]':
        ''' Keys and all of their dependencies '''
        rv = set(keys)
        for key in keys:
            rv.update(self.getAllDependencies(key))
        return sorted(rv)

    def printTree(self, keys: 'list[str]', *, indent: int = 2) -> None:
        queue = [([], key) for key in keys]  # type:list[tuple[list[bool],str]]

        while queue:
            lvl, key = queue.pop(0)
            tx = (' ' * indent).join('│' if x else ' ' for x in lvl)
            if tx:
                conn = '├' if tx[-1] == '│' else '└'
                tx = tx[:-1] + conn + '─' * (indent - 1) + '╴'
            print(tx + key)

            subdeps = self.direct.get(key, [])
            if not subdeps:
                continue
            # leaves first, then by name
            order = sorted((bool(self.direct.get(x)), x) for x in subdeps)
            new_items = [(lvl + [True], pkg) for (_, pkg) in order]
            new_items[-1][0][-1] = False  # only last item has "no more"
            queue = new_items + queue

    def dotGraph(self, keys: 'list[str]') -> None:
        print('digraph G {')
        print('{rank=same;', ', '.join(f'"{x}"' for x in sorted(keys)),
              '[shape=box, style=dashed];}')
        for key in self.unionAll(keys):
            for dep in sorted(self.direct.get(key, [])):
                print(f'"{key}" -> "{dep}";')
        print('}')


# -----------------------------------
#  Tab (install receipt)
# -----------------------------------

class RuntimeDependency(TypedDict):
    full_name: str
    version: str
    revision: int
    pkg_version: str
    declared_directly: bool


class Tab(NamedTuple):
    installedAsDependency: bool = False
    installedOnRequest: bool = True
    pouredFromBottle: bool = True
    time: int = 0
    runtimeDependencies: 'tuple[RuntimeDependency, ...]' = ()
    arch: str = ''
    builtOn: 'Mapping[str, str]' = MappingProxyType({})

    @staticmethod
    def create(
        formula: Formula, installedAsDependency: bool, arch: Arch,
        runtimeDependencies: 'list[RuntimeDependency]',
    ) -> 'Tab':
        return Tab(
            installedAsDependency=installedAsDependency,
            installedOnRequest=not installedAsDependency,
            pouredFromBottle=True,
            time=int(datetime.now().timestamp()),
            runtimeDependencies=tuple(runtimeDependencies),
            arch=arch.cpu,
            builtOn=arch.builtOn(),
        )

    def toJson(self) -> 'dict[str, Any]':
        return {
            'homebrew_version': f'pour {Env.VERSION}',
            'used_options': [],
            'unused_options': [],
            'built_as_bottle': True,
            'poured_from_bottle': self.pouredFromBottle,
            'installed_as_dependency': self.installedAsDependency,
            'installed_on_request': self.installedOnRequest,
            'time': self.time,
            'source_modified_time': 0,
            'compiler': 'clang',
            'stdlib': None,
            'runtime_dependencies': list(self.runtimeDependencies),
            'arch': self.arch,
            'built_on': dict(self.builtOn),
        }

    @staticmethod
    def fromJson(data: 'dict[str, Any]') -> 'Tab':
        return Tab(
            installedAsDependency=bool(
                data.get('installed_as_dependency', False)),
            installedOnRequest=bool(data.get('installed_on_request', True)),
            pouredFromBottle=bool(data.get('poured_from_bottle', True)),
            time=data.get('time') or 0,
            runtimeDependencies=tuple(data.get('runtime_dependencies') or ()),
            arch=data.get('arch') or '',
            builtOn=data.get('built_on') or {},
        )

    def write(self, fname: str) -> None:
        with open(fname, 'w') as fp:
            json.dump(self.toJson(), fp, indent=2)
            fp.write('\n')

    @staticmethod
    def read(fname: str) -> 'Tab|None':
        ''' Returns `None` if missing or unreadable '''
        if not os.path.isfile(fname):
            return None
        try:
            with open(fname) as fp:
                return Tab.fromJson(json.load(fp))
        except (ValueError, AttributeError) as e:
            Log.warn('could not read install receipt', fname, f'({e})')
            return None

    @staticmethod
    def markInstalledOnRequest(fname: str, flag: bool) -> bool:
        ''' Update a single flag and keep everything else untouched '''
        if not os.path.isfile(fname):
            return False
        with open(fname) as fp:
            data = json.load(fp)
        data['installed_on_request'] = flag
        with open(fname, 'w') as fp:
            json.dump(data, fp, indent=2)
            fp.write('\n')
        return True


# -----------------------------------
#  LinkTarget
# -----------------------------------

class LinkTarget(NamedTuple):
    path: str
    target: str  # absolute, fully resolved
    raw: str = ''  # relative target
    direct: str = ''  # absolute, only the link itself resolved

    @staticmethod
    def read(filePath: str) -> 'LinkTarget|None':
        ''' Read a single symlink and populate with absolute paths '''
        if not os.path.islink(filePath):
            return None
        raw = os.readlink(filePath)
        absTgt = os.path.join(os.path.dirname(filePath), raw)
        direct = os.path.join(os.path.realpath(os.path.dirname(absTgt)),
                              os.path.basename(absTgt))
        return LinkTarget(filePath, os.path.realpath(absTgt), raw, direct)

    @staticmethod
    def allInDir(path: str) -> 'list[LinkTarget]':
        return [x for f in os.scandir(path) if (x := LinkTarget.read(f.path))]

    def pointsInto(self, path: str) -> bool:
        ''' `path` must be resolved already (realpath) '''
        return self.target.startswith(path + '/') or \
            self.direct.startswith(path + '/')


# -----------------------------------
#  Keg
# -----------------------------------

class Keg:
    ''' A single installed version: `<Cellar>/<name>/<version>` '''
    RECEIPT = 'INSTALL_RECEIPT.json'

    def __init__(self, paths: Paths, name: str, version: str) -> None:
        assert name and version, 'keg requires name and version'
        self.paths = paths
        self.name = name
        self.version = version
        self.path = os.path.join(paths.cellar, name, version)

    def __repr__(self) -> str:
        return f'<Keg {self.name} {self.version}>'

    @property
    def optPath(self) -> str:
        return os.path.join(self.paths.opt, self.name)

    @property
    def tabPath(self) -> str:
        return os.path.join(self.path, Keg.RECEIPT)

    def exists(self) -> bool:
        return os.path.isdir(self.path)

    def isActive(self) -> bool:
        ''' Opt alias points to this keg '''
        lnk = LinkTarget.read(self.optPath)
        return bool(lnk) and lnk.target == os.path.realpath(self.path)

    def linkOpt(self) -> None:
        ''' Point `<Prefix>/opt/<name>` to this keg (last writer wins) '''
        os.makedirs(self.paths.opt, exist_ok=True)
        if os.path.lexists(self.optPath):
            if os.path.isdir(self.optPath) and not os.path.islink(self.optPath):
                shutil.rmtree(self.optPath)
            else:
                os.remove(self.optPath)
        os.symlink(os.path.relpath(self.path, self.paths.opt), self.optPath)

    def writeTab(
        self, formula: Formula, installedAsDependency: bool, arch: Arch,
        runtimeDependencies: 'list[RuntimeDependency]|None' = None,
    ) -> Tab:
        tab = Tab.create(formula, installedAsDependency, arch,
                         runtimeDependencies or [])
        tab.write(self.tabPath)
        return tab

    def readTab(self) -> 'Tab|None':
        return Tab.read(self.tabPath)


# -----------------------------------
#  LocalPackage
# -----------------------------------

class LocalPackage:
    '''
    All installed versions of a package (`<Cellar>/<name>`).
    Most properties are cached. Throw away your instance after (un-)install.
    '''

    def __init__(self, paths: Paths, name: str) -> None:
        self.paths = paths
        self.name = name
        self.path = os.path.join(paths.cellar, name)

    def __repr__(self) -> str:
        return f'<LocalPackage {self.name}>'

    @staticmethod
    def all(paths: Paths, names: 'list[str]|None' = None) \
            -> 'list[LocalPackage]':
        ''' Given packages (must be installed) or everything in the cellar '''
        if names:
            return [LocalPackage(paths, normalizeName(x)).assertInstalled()
                    for x in names]
        if not os.path.isdir(paths.cellar):
            return []
        rv = [LocalPackage(paths, x.name) for x in os.scandir(paths.cellar)
              if x.is_dir() and not x.name.startswith('.')]
        return sorted((x for x in rv if x.installed), key=lambda x: x.name)

    def assertInstalled(self) -> 'LocalPackage':
        ''' Raises `NoSuchKeg` '''
        if not self.installed:
            raise NoSuchKeg(self.name, self.path)
        return self

    def keg(self, version: str) -> Keg:
        return Keg(self.paths, self.name, version)

    @cached_property
    def allVersions(self) -> 'list[str]':
        ''' Sorted list of installed versions '''
        if not os.path.isdir(self.path):
            return []
        return sorted(x.name for x in os.scandir(self.path)
                      if x.is_dir() and not x.name.startswith('.'))

    @property
    def installed(self) -> bool:
        return len(self.allVersions) > 0

    @cached_property
    def optLink(self) -> 'LinkTarget|None':
        ''' Opt alias (if it points inside this package) '''
        lnk = LinkTarget.read(os.path.join(self.paths.opt, self.name))
        if lnk and lnk.pointsInto(os.path.realpath(self.path)):
            return lnk
        return None

    @cached_property
    def activeVersion(self) -> 'str|None':
        ''' Version the opt alias points to '''
        if lnk := self.optLink:
            version = os.path.basename(lnk.target)
            if version in self.allVersions:
                return version
        return None

    @property
    def activeKeg(self) -> 'Keg|None':
        return self.keg(self.activeVersion) if self.activeVersion else None

    @property
    def latestKeg(self) -> Keg:
        ''' Latest installed version (alphanumeric sort) '''
        assert self.installed, 'only installed packages have a latest keg'
        return self.keg(self.allVersions[-1])

    @cached_property
    def pinned(self) -> bool:
        return os.path.lexists(os.path.join(self.paths.pinned, self.name))

    @property
    def tab(self) -> Tab:
        ''' Receipt of active (or latest) keg. Defaults if missing. '''
        keg = self.activeKeg or self.latestKeg
        return keg.readTab() or Tab()

    def pin(self, flag: bool) -> bool:
        ''' Returns `False` if nothing changed '''
        marker = os.path.join(self.paths.pinned, self.name)
        if flag == os.path.lexists(marker):
            return False
        if flag:
            keg = self.activeKeg or self.latestKeg
            os.makedirs(self.paths.pinned, exist_ok=True)
            os.symlink(os.path.relpath(keg.path, self.paths.pinned), marker)
        else:
            os.remove(marker)
        self.__dict__.pop('pinned', None)
        return True

    def remove(
        self, versions: 'list[str]', linker: 'Linker', *, dryRun: bool = False
    ) -> int:
        '''
        Unlink and delete given versions. Drop opt alias if it points to one
        of them. Delete rack (and pin) if no version is left.
        Returns size of savings.
        '''
        savings = 0
        for version in versions:
            keg = self.keg(version)
            links = linker.unlink(keg, dryRun=dryRun)
            if links:
                Log.info('{} {}: {} symlinks'.format(
                    'Would unlink' if dryRun else 'Unlinked',
                    keg.path, len(links)))
            if keg.isActive():
                Log.debug('[DEBUG] remove opt alias', keg.optPath)
                if not dryRun:
                    os.remove(keg.optPath)
            savings += File.remove(keg.path, self.paths, dryRun=dryRun)

        if not dryRun:
            self.__dict__.pop('allVersions', None)
            self.__dict__.pop('optLink', None)
            self.__dict__.pop('activeVersion', None)
            if not self.installed and os.path.isdir(self.path):
                shutil.rmtree(self.path)  # only dot-files left
            if not self.installed:
                marker = os.path.join(self.paths.pinned, self.name)
                if os.path.lexists(marker):
                    os.remove(marker)
        return savings


# -----------------------------------
#  Linker
# -----------------------------------

class Linker:
    ''' Symlink keg files into `<Prefix>/{bin,lib,...}` '''
    LINK_DIRS = ('bin', 'sbin', 'lib', 'include', 'share', 'etc',
                 'Frameworks')
    SKIP_FILES = ('.DS_Store', Keg.RECEIPT)

    def __init__(self, paths: Paths) -> None:
        self.paths = paths

    @staticmethod
    def shouldSkip(path: str) -> bool:
        ''' Metadata and interpreter caches are never linked '''
        name = os.path.basename(path)
        if name in Linker.SKIP_FILES:
            return True
        if '.brew' in path.split(os.sep):
            return True
        return name.endswith(('.pyc', '.pyo')) and '/site-packages/' in path

    def isLinked(self, keg: Keg) -> bool:
        ''' Any symlink in `<Prefix>/bin` resolves into the keg '''
        binDir = os.path.join(self.paths.prefix, 'bin')
        if not os.path.isdir(binDir):
            return False
        kegPath = os.path.realpath(keg.path)
        return any(x.pointsInto(kegPath) for x in LinkTarget.allInDir(binDir))

    def link(
        self, keg: Keg, *,
        dryRun: bool = False, overwrite: bool = False, verbose: bool = False,
    ) -> 'list[LinkTarget]':
        '''
        Create relative symlinks for every file. Raises `LinkConflict`.
        Returns list of created (or would-be created) links.
        '''
        if not keg.exists():
            raise NoSuchKeg(keg.name, keg.path)
        if not dryRun and self.isLinked(keg):
            Log.warn(f'Already linked: {keg.path}')
            Log.info('To relink, run:')
            Log.info(f'  pour unlink {keg.name} && pour link {keg.name}')
            return []

        rv = []
        for sub in Linker.LINK_DIRS:
            srcDir = os.path.join(keg.path, sub)
            if not os.path.isdir(srcDir):
                continue
            for base, dirs, files in os.walk(srcDir):
                dstBase = os.path.join(
                    self.paths.prefix, os.path.relpath(base, keg.path))
                self._mkdir(keg, base, dstBase,
                            dryRun=dryRun, overwrite=overwrite)
                # symlinked dirs are linked like files, not traversed
                dirLinks = [x for x in dirs
                            if os.path.islink(os.path.join(base, x))]
                dirs[:] = sorted(x for x in dirs if x not in dirLinks)
                for fname in sorted(files + dirLinks):
                    src = os.path.join(base, fname)
                    if Linker.shouldSkip(src):
                        continue
                    if lnk := self._linkFile(
                        keg, src, os.path.join(dstBase, fname),
                        dryRun=dryRun, overwrite=overwrite, verbose=verbose,
                    ):
                        rv.append(lnk)
        return rv

    def _mkdir(
        self, keg: Keg, src: str, dst: str, *, dryRun: bool, overwrite: bool,
    ) -> None:
        ''' Create real directory. A symlinked dir may be another keg's. '''
        if os.path.isdir(dst) and not os.path.islink(dst):
            return
        if os.path.lexists(dst):
            if dryRun:
                Log.main(f'  {self.paths.shortPath(dst)}')
                return
            if not overwrite:
                raise LinkConflict(keg.name, src, dst, isDir=False)
            Log.info('  overwrite', self.paths.shortPath(dst))
            os.remove(dst)
        if not dryRun:
            os.makedirs(dst)

    def _linkFile(
        self, keg: Keg, src: str, dst: str, *,
        dryRun: bool, overwrite: bool, verbose: bool,
    ) -> 'LinkTarget|None':
        relTgt = os.path.relpath(src, os.path.dirname(dst))
        short = self.paths.shortPath(dst)
        lnk = LinkTarget(dst, os.path.realpath(src), relTgt, src)

        if os.path.lexists(dst):
            if os.path.realpath(dst) == os.path.realpath(src):
                if verbose:
                    Log.info('  skip (already linked)', short)
                return None
            isDir = os.path.isdir(dst) and not os.path.islink(dst)
            if dryRun:
                Log.main(f'  {short}' + (' (directory)' if isDir else ''))
                return lnk
            if isDir or not overwrite:
                raise LinkConflict(keg.name, src, dst, isDir=isDir)
            Log.info('  overwrite', short)
            os.remove(dst)

        if dryRun:
            Log.main(f'  {short}')
            return lnk
        os.symlink(relTgt, dst)
        if verbose:
            Log.info(f'  link {short} -> {relTgt}')
        return lnk

    def findLinks(self, keg: Keg) -> 'list[LinkTarget]':
        ''' All symlinks in the prefix that resolve into the keg '''
        kegPath = os.path.realpath(keg.path)
        rv = []
        for sub in Linker.LINK_DIRS:
            top = os.path.join(self.paths.prefix, sub)
            if not os.path.isdir(top):
                continue
            for base, dirs, files in os.walk(top):
                dirLinks = [x for x in dirs
                            if os.path.islink(os.path.join(base, x))]
                dirs[:] = sorted(x for x in dirs if x not in dirLinks)
                for fname in sorted(files + dirLinks):
                    lnk = LinkTarget.read(os.path.join(base, fname))
                    if lnk and lnk.pointsInto(kegPath):
                        rv.append(lnk)
        return rv

    def unlink(
        self, keg: Keg, *, dryRun: bool = False, verbose: bool = False
    ) -> 'list[LinkTarget]':
        ''' Remove symlinks into keg. Returns removed (or would-be) links '''
        links = self.findLinks(keg)
        for lnk in links:
            if dryRun:
                Log.main(f'  {self.paths.shortPath(lnk.path)}')
                continue
            if verbose:
                Log.info('  unlink', self.paths.shortPath(lnk.path))
            os.remove(lnk.path)
        return links


# -----------------------------------
#  DependencyChecker
# -----------------------------------

class DependencyChecker:
    ''' Dependents lookup for safe removal (uninstall, leaves, autoremove) '''
    CASK_MARKER = 'cask:'

    def __init__(self, paths: Paths, formulary: Formulary) -> None:
        self.paths = paths
        self.formulary = formulary

    def installedNames(self) -> 'list[str]':
        return [x.name for x in LocalPackage.all(self.paths)]

    def runtimeDependencies(self, name: str) -> 'list[str]':
        ''' Online data, fallback to install receipt '''
        try:
            return self.formulary.get(name).dependencyList()
        except PackageNotFound:
            pkg = LocalPackage(self.paths, name)
            if not pkg.installed:
                return []
            return [normalizeName(x['full_name'])
                    for x in pkg.tab.runtimeDependencies
                    if x.get('declared_directly', True)]

    def dependsOn(self, pkg: str, target: str, visited: 'set[str]') -> bool:
        ''' Transitive check, each package is expanded at most once '''
        for dep in self.runtimeDependencies(pkg):
            if dep == target:
                return True
            if dep in visited:
                continue
            visited.add(dep)
            if self.dependsOn(dep, target, visited):
                return True
        return False

    def findDependents(
        self, name: str, installed: 'list[str]|None' = None
    ) -> 'list[str]':
        ''' Installed packages that (transitively) require `name` '''
        if installed is None:
            installed = self.installedNames()
        return sorted(other for other in installed
                      if other != name and self.dependsOn(other, name, set()))

    def caskDependencies(self) -> 'dict[str, list[str]]':
        ''' Cask token -> formula dependencies (from installed metadata) '''
        rv = {}  # type: dict[str, list[str]]
        pattern = os.path.join(
            glob.escape(self.paths.caskroom), '*', '.metadata', '*', '*',
            'Casks', '*.json')
        for fname in sorted(glob.glob(pattern)):
            token = os.path.relpath(fname, self.paths.caskroom).split(os.sep)[0]
            try:
                with open(fname) as fp:
                    data = json.load(fp)
            except ValueError as e:
                Log.warn('could not read cask metadata', fname, f'({e})')
                continue
            deps = (data.get('depends_on') or {}).get('formula') or []
            if isinstance(deps, str):
                deps = [deps]
            rv.setdefault(token, []).extend(normalizeName(x) for x in deps)
        return rv

    def buildReverseDependencyMap(self, installed: 'list[str]') \
            -> 'dict[str, set[str]]':
        ''' Dependency -> set of installed packages (or casks) using it '''
        rv = {}  # type: dict[str, set[str]]
        for pkg in installed:
            for dep in self.runtimeDependencies(pkg):
                rv.setdefault(dep, set()).add(pkg)
        for cask, deps in self.caskDependencies().items():
            for dep in deps:
                rv.setdefault(dep, set()).add(DependencyChecker.CASK_MARKER
                                              + cask)
        return rv

    def installedGraph(self) -> DependencyGraph:
        ''' Forward graph of installed packages '''
        graph = DependencyGraph()
        for name in self.installedNames():
            graph.direct[name] = self.runtimeDependencies(name)
        return graph

    def leaves(
        self, *, onRequest: bool = False, asDependency: bool = False
    ) -> 'list[str]':
        ''' Installed packages nothing else depends on '''
        if onRequest and asDependency:
            raise UsageError('--installed-on-request and '
                             '--installed-as-dependency are mutually exclusive')
        installed = self.installedNames()
        reverse = self.buildReverseDependencyMap(installed)
        rv = []
        for name in installed:
            if reverse.get(name):
                continue
            if onRequest or asDependency:
                tab = LocalPackage(self.paths, name).tab
                if onRequest and not tab.installedOnRequest:
                    continue
                if asDependency and not tab.installedAsDependency:
                    continue
            rv.append(name)
        return rv

    def autoremoveCandidates(self) -> 'list[str]':
        ''' Dependency-only packages without dependents (in removal order) '''
        installed = self.installedNames()
        reverse = self.buildReverseDependencyMap(installed)
        asDep = set(x for x in installed
                    if LocalPackage(self.paths, x).tab.installedAsDependency)
        rv = []  # type: list[str]
        # removing a leaf may turn its dependencies into leaves
        while dangling := sorted(x for x in asDep if not reverse.get(x)):
            rv += dangling
            asDep.difference_update(dangling)
            for users in reverse.values():
                users.difference_update(dangling)
        return rv

    def autoremove(self, *, dryRun: bool = False) -> 'list[str]':
        names = self.autoremoveCandidates()
        linker = Linker(self.paths)
        savings = 0
        for name in names:
            pkg = LocalPackage(self.paths, name)
            savings += pkg.remove(pkg.allVersions, linker, dryRun=dryRun)
        if names:
            Log.info(Txt.freedDiskSpace(savings, dryRun=dryRun))
        return names


# -----------------------------------
#  Bottles
# -----------------------------------

class Bottles:
    @staticmethod
    def filename(formula: Formula, tag: str, rebuild: int) -> str:
        ''' "<name>--<version>.<tag>.bottle[.<rebuild>].tar.gz" '''
        suffix = f'.{rebuild}' if rebuild > 0 else ''
        return f'{formula.name}--{formula.pkgVersion}.{tag}.bottle{suffix}' \
            '.tar.gz'

    @staticmethod
    def cachePath(paths: Paths, url: str, filename: str) -> str:
        ''' "<Cache>/downloads/<sha256(url)>--<filename>" '''
        urlHash = hashlib.sha256(url.encode('utf8')).hexdigest()
        return os.path.join(paths.downloads, f'{urlHash}--{filename}')

    @staticmethod
    def fetch(url: str, dest: str) -> str:
        headers = {}
        if url.startswith('https://ghcr.io/'):
            headers['Authorization'] = 'Bearer QQ=='  # anonymous token
        return Curl.file(dest, url, headers, force=True)

    @staticmethod
    def verify(fname: str, sha256: str, *, name: str) -> None:
        ''' Raises `ChecksumMismatch` (and deletes the invalid file) '''
        actual = File.sha256(fname)
        if actual != sha256.lower():
            os.remove(fname)
            raise ChecksumMismatch(name, fname, sha256, actual)


# -----------------------------------
#  TarPackage
# -----------------------------------

class TarPackage:
    def __init__(self, fname: str) -> None:
        self.fname = fname

    def extract(self, dest: str, *, name: str) -> None:
        ''' Extract tar file into `dest` (cellar). Raises `ExtractionFailed` '''
        os.makedirs(dest, exist_ok=True)
        try:
            with openTarfile(self.fname, 'r') as tar:
                subset = []
                for x in tar:
                    if self.filter(x, dest):
                        subset.append(x)
                    else:
                        Log.error(f'prohibited tar entry "{x.path}" in',
                                  os.path.basename(self.fname), summary=True)
                tar.extractall(dest, subset, filter='fully_trusted')
        except (TarError, OSError) as e:
            raise ExtractionFailed(name, dest, str(e)) from e

    # Follows Python 3.12 tarfile _get_filtered_attrs
    def filter(self, member: TarInfo, dest_path: str) -> bool:
        '''Remove dangerous tar elements (relative dir escape & permissions)'''
        dest_path = os.path.realpath(dest_path)
        if member.name.startswith(('/', os.sep)):
            Log.warn('reject absolute path', member.name, summary=True)
            return False
        # stay in the destination
        target_path = os.path.realpath(os.path.join(dest_path, member.name))
        if os.path.commonpath([target_path, dest_path]) != dest_path:
            Log.warn('path breaks cellar bounds', member.name, summary=True)
            return False
        if member.mode is not None:
            # no high bits, no group/other write
            member.mode &= 0o755
            if member.isreg() or member.islnk():
                if not member.mode & 0o100:
                    member.mode &= ~0o111
                member.mode |= 0o600
            elif not (member.isdir() or member.issym()):
                Log.warn('reject special file', member.name, summary=True)
                return False

        if member.islnk() or member.issym():
            if os.path.isabs(member.linkname):
                Log.warn('reject symlink absolute path', member.linkname,
                         summary=True)
                return False
            member.linkname = os.path.normpath(member.linkname)
            if member.issym():
                target_path = os.path.join(
                    dest_path, os.path.dirname(member.name), member.linkname)
            else:
                target_path = os.path.join(dest_path, member.linkname)
            target_path = os.path.realpath(target_path)
            if os.path.commonpath([target_path, dest_path]) != dest_path:
                Log.warn('symlink breaks cellar bounds', member.linkname,
                         summary=True)
                return False
        return True


# -----------------------------------
#  Relocation
# -----------------------------------

class Relocator:
    ''' Replace `@@HOMEBREW_*@@` placeholders in text files of a keg '''
    NEEDLE = b'@@HOMEBREW_'
    CHUNK_SIZE = 4096

    PlaceholderMatches = list[tuple[int, bytes]]

    def __init__(self, paths: Paths) -> None:
        prefix = paths.prefix.encode('utf8')
        self.replacements = {
            b'@@HOMEBREW_PREFIX@@': prefix,
            b'@@HOMEBREW_CELLAR@@': paths.cellar.encode('utf8'),
            b'@@HOMEBREW_REPOSITORY@@': prefix,
            b'@@HOMEBREW_LIBRARY@@': prefix + b'/Library',
        }

    def run(self, path: str) -> int:
        ''' Returns number of changed files '''
        changed = 0
        for base, _dirs, files in os.walk(path):
            for file in files:
                fname = os.path.join(base, file)
                if os.path.islink(fname) or File.isBinary(fname):
                    continue
                if self.inreplace(fname):
                    changed += 1
        return changed

    def inreplace(self, fname: str) -> bool:
        matches = self._findPlaceholders(fname)
        if not matches:
            return False

        Log.debug('  replace placeholders in', fname)
        for _pos, match in matches:
            if match not in self.replacements:
                Log.warn('unknown placeholder', match.decode('utf8', 'replace'),
                         'in', fname, summary=True)
        matches = [x for x in matches if x[1] in self.replacements]
        if not matches:
            return False

        tmp_tgt = fname + '.pour-repl'
        self._writeReplaced(matches, fname, tmp_tgt)
        shutil.copystat(fname, tmp_tgt)
        os.rename(tmp_tgt, fname)
        return True

    def _findPlaceholders(self, fname: str) -> PlaceholderMatches:
        ''' Returns list of `(pos, b'@@PLACEHOLDER@@')` '''
        needle = Relocator.NEEDLE
        rv = []
        with open(fname, 'rb') as fp:
            while True:
                chunk = fp.read(Relocator.CHUNK_SIZE)
                if len(chunk) == 0:
                    break

                if needle not in chunk:
                    if len(chunk) == Relocator.CHUNK_SIZE:
                        fp.seek(-len(needle), 1)  # needle across chunks
                    continue

                idx = chunk.index(needle)
                if idx > len(chunk) - 30 and len(chunk) == Relocator.CHUNK_SIZE:
                    fp.seek(-(len(chunk) - idx), 1)  # re-read from needle
                    continue

                suffix = chunk[idx + 2:idx + 30]
                if b'@@' in suffix:
                    end = idx + 2 + suffix.index(b'@@') + 2
                    rv.append((fp.tell() - len(chunk) + idx, chunk[idx:end]))
                    fp.seek(- len(chunk) + end, 1)
                    continue

                fp.seek(- len(chunk) + idx + len(needle), 1)
        return rv

    def _writeReplaced(
        self, matches: PlaceholderMatches, src: str, dst: str
    ) -> None:
        prev = 0
        with open(src, 'rb') as fpr:
            with open(dst, 'wb') as fpw:
                for pos, match in matches:
                    fpw.write(fpr.read(pos - prev))
                    fpr.seek(pos + len(match))
                    prev = fpr.tell()
                    fpw.write(self.replacements[match])
                while chunk := fpr.read(Relocator.CHUNK_SIZE):
                    fpw.write(chunk)


# -----------------------------------
#  InstallQueue
# -----------------------------------

class InstallResult(NamedTuple):
    name: str
    version: str
    status: str  # see InstallQueue.INSTALLED, etc.
    error: 'BrewError|None' = None


class InstallQueue:
    '''
    resolve (`add`) -> expand & filter (`plan`) -> fetch, verify, pour,
    opt-link, write receipt (`install`). The first failure aborts the queue.
    '''
    INSTALLED = 'installed'
    ALREADY_INSTALLED = 'already-installed'
    WOULD_INSTALL = 'would-install'
    FAILED = 'failed'

    class Outdated(NamedTuple):
        name: str
        installed: 'list[str]'
        current: str

    def __init__(
        self, ctx: Context, *,
        force: bool = False, dryRun: bool = False,
        ignoreDependencies: bool = False, includeBuild: bool = False,
        skipLink: 'bool|None' = None, keepOld: 'bool|None' = None,
    ) -> None:
        self.paths = ctx.paths
        self.arch = ctx.arch
        self.formulary = ctx.formulary
        self.linker = Linker(ctx.paths)
        self.force = force
        self.dryRun = dryRun
        self.ignoreDependencies = ignoreDependencies
        self.includeBuild = includeBuild
        self.skipLink = not ctx.config.linkOnInstall if skipLink is None \
            else skipLink
        self.keepOld = ctx.config.keepOldVersions if keepOld is None \
            else keepOld
        self.graph = DependencyGraph(ctx.formulary)
        self._requested = []  # type: list[str]
        self._upgrade = set()  # type: set[str]
        self.installQueue = []  # type: list[str]
        self.finished = []  # type: list[InstallResult]

    def resolve(self, name: str) -> Formula:
        ''' Raises `PackageNotFound`, `NoStableVersion` '''
        formula = self.formulary.get(normalizeName(name))
        if not formula.stableVersion:
            raise NoStableVersion(formula.name)
        return formula

    def add(self, name: str) -> None:
        ''' Add user requested package (and its dependencies) '''
        formula = self.resolve(name)
        if formula.name not in self._requested:
            self._requested.append(formula.name)
        if not self.ignoreDependencies:
            self.graph.build(formula.name, includeBuild=self.includeBuild)

    def addOutdated(self, names: 'list[str]') -> 'list[Outdated]':
        ''' Add installed packages with a newer version (all if no names) '''
        rv = []
        for pkg in LocalPackage.all(self.paths, names):
            try:
                formula = self.resolve(pkg.name)
            except PackageNotFound:
                if names:
                    raise
                Log.debug(f'[DEBUG] skip {pkg.name} (no online data)')
                continue
            if formula.pkgVersion in pkg.allVersions:
                continue
            if formula.pinned:
                Log.warn(f'{pkg.name} is pinned. Skip upgrade to',
                         formula.pkgVersion)
                continue
            rv.append(InstallQueue.Outdated(
                pkg.name, pkg.allVersions, formula.pkgVersion))
            self._upgrade.add(pkg.name)
            self.add(pkg.name)
        return rv

    def plan(self) -> 'list[str]':
        ''' Install order without packages which are already present '''
        if self.ignoreDependencies:
            order = list(self._requested)
        else:
            order = self.graph.topologicalSort()

        self.installQueue = []
        for name in order:
            optPath = os.path.join(self.paths.opt, name)
            if self.force or name in self._upgrade \
                    or not os.path.exists(optPath):
                self.installQueue.append(name)
            elif name in self._requested:
                self._alreadyInstalled(name)
        return self.installQueue

    def _alreadyInstalled(self, name: str) -> None:
        formula = self.formulary.get(name)
        active = LocalPackage(self.paths, name).activeVersion or '?'
        if active == formula.pkgVersion:
            Log.warn(f'{name} {active} is already installed and up-to-date.')
            Log.info('To reinstall, run:')
            Log.info(f'  pour install --force {name}')
        else:
            Log.warn(f'{name} {active} is already installed.')
            Log.info(f'To upgrade to {formula.pkgVersion}, run:')
            Log.info(f'  pour upgrade {name}')
        self.finished.append(InstallResult(
            name, active, InstallQueue.ALREADY_INSTALLED))

    def install(self) -> 'list[InstallResult]':
        ''' Process queue in order. Raises on first failure. '''
        Log.beginCounter(len(self.installQueue))
        Log.beginErrorSummary()
        try:
            for name in self.installQueue:
                version = ''
                try:
                    formula = self.resolve(name)
                    version = formula.pkgVersion
                    self.pour(formula)
                except BrewError as e:
                    self.finished.append(InstallResult(
                        name, version, InstallQueue.FAILED, e))
                    raise
                self.finished.append(InstallResult(
                    name, version, InstallQueue.WOULD_INSTALL if self.dryRun
                    else InstallQueue.INSTALLED))
        finally:
            Log.endCounter()
            Log.dumpErrorSummary()
        return self.finished

    def bottleFor(self, formula: Formula) -> 'tuple[str, BottleFile]':
        ''' Raises `NoBottleForPlatform` '''
        tag = self.arch.bottleTag
        if formula.bottle and (match := formula.bottle.forTag(tag)):
            return match
        available = sorted(formula.bottle.files) if formula.bottle else []
        raise NoBottleForPlatform(formula.name, tag, available)

    def pour(self, formula: Formula) -> Keg:
        ''' Install a single package '''
        tag, bottleFile = self.bottleFor(formula)
        assert formula.bottle
        filename = Bottles.filename(formula, tag, formula.bottle.rebuild)
        archive = Bottles.cachePath(self.paths, bottleFile.url, filename)
        keg = Keg(self.paths, formula.name, formula.pkgVersion)

        if self.dryRun:
            Log.main('would install', formula.name, formula.pkgVersion,
                     count=True)
            return keg

        if os.path.isfile(archive):
            Log.info('==> Using cached', filename)
        else:
            Log.info('==> Downloading', bottleFile.url)
            Bottles.fetch(bottleFile.url, archive)
        Bottles.verify(archive, bottleFile.sha256, name=formula.name)

        pkg = LocalPackage(self.paths, formula.name)
        previous = pkg.activeKeg
        previousTab = previous.readTab() if previous else None

        if keg.exists():
            Log.info('==> Removing existing', keg.path)
            self.linker.unlink(keg)
            shutil.rmtree(keg.path)

        Log.main('==> Pouring', filename, count=True)
        TarPackage(archive).extract(self.paths.cellar, name=formula.name)
        if not keg.exists():
            raise ExtractionFailed(formula.name, keg.path,
                                   'archive does not contain this version')
        Relocator(self.paths).run(keg.path)

        if previous and previous.version != keg.version:
            self.linker.unlink(previous)
        keg.linkOpt()

        asDependency = formula.name not in self._requested
        if formula.name in self._upgrade and previousTab:
            asDependency = previousTab.installedAsDependency
        keg.writeTab(formula, asDependency, self.arch,
                     self.runtimeDependencies(formula))
        self.link(keg, formula)
        return keg

    def runtimeDependencies(self, formula: Formula) \
            -> 'list[RuntimeDependency]':
        ''' Runtime closure for the install receipt '''
        direct = formula.dependencyList()
        try:
            graph = DependencyGraph(self.formulary).build(formula.name)
            names = graph.getAllDependencies(formula.name)
        except PackageNotFound:
            names = direct
        rv = []
        for name in names:
            try:
                dep = self.formulary.get(name)
            except PackageNotFound:
                continue
            if not dep.stableVersion:
                continue
            rv.append(RuntimeDependency(
                full_name=dep.fullName or dep.name,
                version=dep.stableVersion,
                revision=dep.revision,
                pkg_version=dep.pkgVersion,
                declared_directly=name in direct,
            ))
        return rv

    def link(self, keg: Keg, formula: Formula) -> None:
        ''' Link into prefix. A conflict does not fail the install. '''
        if self.skipLink:
            return
        if formula.kegOnly:
            Log.info(f'{formula.name} is keg-only and was not linked into',
                     self.paths.prefix)
            return
        try:
            links = self.linker.link(keg)
        except LinkConflict as e:
            Log.warn(e, summary=True)
            Log.warn(f'{keg.name} was installed but is not linked into',
                     self.paths.prefix, summary=True)
            return
        Log.info(f'==> Linked {len(links)} files of {keg.name}')

    def removeSuperseded(self) -> int:
        '''
        Unlink and delete old versions of upgraded packages.
        Does nothing if `keepOld` is set. Returns savings.
        '''
        if self.keepOld:
            return 0
        savings = 0
        for res in self.finished:
            if res.name not in self._upgrade or \
                    res.status not in (InstallQueue.INSTALLED,
                                       InstallQueue.WOULD_INSTALL):
                continue
            pkg = LocalPackage(self.paths, res.name)
            old = [x for x in pkg.allVersions if x != res.version]
            if not old:
                continue
            try:
                savings += pkg.remove(old, self.linker, dryRun=self.dryRun)
            except OSError as e:
                Log.error(f'could not remove {res.name} {", ".join(old)}:', e)
        return savings


# -----------------------------------
#  UninstallQueue
# -----------------------------------

class UninstallQueue:
    def __init__(
        self, ctx: Context, *,
        force: bool = False, ignoreDependencies: bool = False,
    ) -> None:
        self.paths = ctx.paths
        self.checker = DependencyChecker(ctx.paths, ctx.formulary)
        self.force = force
        self.ignoreDependencies = ignoreDependencies
        self.uninstallQueue = []  # type: list[LocalPackage]

    def collect(self, names: 'list[str]') -> None:
        ''' Raises `NoSuchKeg` '''
        self.uninstallQueue = LocalPackage.all(self.paths, names)

    def versionsToRemove(self, pkg: LocalPackage) -> 'list[str]':
        if self.force or not pkg.activeVersion:
            return pkg.allVersions
        return [pkg.activeVersion]

    def validateQueue(self) -> None:
        ''' Raises `RefusingToUninstall`. Checked before anything is removed '''
        if self.force or self.ignoreDependencies:
            return
        installed = self.checker.installedNames()
        batch = set(x.name for x in self.uninstallQueue)
        for pkg in self.uninstallQueue:
            dependents = [x for x in self.checker.findDependents(
                pkg.name, installed) if x not in batch]
            if dependents:
                keg = pkg.activeKeg or pkg.latestKeg
                raise RefusingToUninstall(pkg.name, keg.path, dependents)

    def uninstall(self, *, dryRun: bool = False) -> int:
        ''' Returns size of savings '''
        linker = Linker(self.paths)
        savings = 0
        for pkg in self.uninstallQueue:
            savings += pkg.remove(self.versionsToRemove(pkg), linker,
                                  dryRun=dryRun)
        return savings


# -----------------------------------
#  Helper
# -----------------------------------

class File:
    @staticmethod
    def isBinary(fname: str) -> bool:
        with open(fname, 'rb') as fp:
            return b'\0' in fp.read(4096)

    @staticmethod
    def sha256(fname: str) -> str:
        ''' Calculate sha256 sum of file content '''
        rv = hashlib.sha256()
        with open(fname, 'rb') as f:
            while data := f.read(65536):
                rv.update(data)
        return rv.hexdigest()

    @staticmethod
    def folderSize(path: str) -> 'tuple[int, int]':
        '''Calculate total size of folder and all it's content (recursively)'''
        files = 0
        size = 0
        for entry in os.scandir(path):
            if not entry.is_symlink():
                if entry.is_file():
                    files += 1
                    size += os.path.getsize(entry)
                elif entry.is_dir():
                    df, ds = File.folderSize(entry.path)
                    files += df
                    size += ds
        return files, size

    @staticmethod
    def remove(path: str, paths: Paths, *, dryRun: bool = False) -> int:
        '''Delete file or folder. Calculate and print size. Optional dry-run'''
        isdir = os.path.isdir(path) and not os.path.islink(path)
        files = 0
        if isdir:
            files, size = File.folderSize(path)
        else:
            size = 0 if os.path.islink(path) else os.path.getsize(path)

        Log.main('{}: {} ({}{})'.format(
            'Would remove' if dryRun else 'Removing',
            paths.shortPath(path),
            f'{files} files, ' if isdir else '',
            Txt.humanSize(size)))
        if not dryRun:
            shutil.rmtree(path) if isdir else os.remove(path)
        return size


class Txt:
    ''' They all return strings '''
    @staticmethod
    def humanSize(size: float) -> str:
        ''' Convert bytes to human readable format, e.g., 4096 -> "4.0K" '''
        for unit in 'BKMGTP':
            if size < 1024.0:
                break
            size /= 1024.0
        return f'{size:.1f}{unit}'

    @staticmethod
    def freedDiskSpace(savings: int, *, dryRun: bool) -> str:
        ''' "==> This operation has freed approximately X of disk space" '''
        return '==> This operation {} approximately {} of disk space'.format(
            'would free' if dryRun else 'has freed', Txt.humanSize(savings))

    @staticmethod
    def prettyList(arr: 'list[str]', prefix: str = '  - ') -> str:
        ''' Join list of items with newline and prepend `prefix` '''
        return '\n'.join(prefix + x for x in arr)

    @staticmethod
    def joinNames(arr: 'list[str]') -> str:
        ''' "a", "a and b", "a, b and c" '''
        if len(arr) < 2:
            return ''.join(arr)
        return ', '.join(arr[:-1]) + ' and ' + arr[-1]


class Utils:
    @staticmethod
    def printInColumns(
        strings: 'list[str]', *,
        min_lines: int = 1, prefix: str = '', sep: str = '    ',
        plainList: bool = False,
    ) -> None:
        '''Detect best possible column-width and print `strings` in columns'''
        if not strings:
            return
        if plainList:
            for line in strings:
                print(line)
            return
        max_width = shutil.get_terminal_size().columns
        rows, cols, total = 0, 0, len(strings)
        lens = [len(x) for x in strings]
        widths = lens
        min_needed = len(prefix) + sum(lens) + len(sep) * (total - 1)
        min_rows = max(min_lines, math.ceil(min_needed / max_width))
        for rows in range(min_rows, total + 1):
            cols = math.ceil(total / rows)
            widths = [max(lens[rows * i:rows * i + rows])
                      for i in range(cols)]
            needed = len(prefix) + sum(widths) + (cols - 1) * len(sep)
            if needed < max_width:  # < instead of <= because +1 for \n
                break
        allOfThem = [strings[rows * i:rows * i + rows] for i in range(cols)]
        allOfThem[-1] += [''] * (rows * cols - total)
        for parts in zip(*allOfThem):
            line = sep.join(f'{x:{w}}' for x, w in zip(parts, widths))
            print(prefix + line.rstrip())


# -----------------------------------
#  API
# -----------------------------------

class ApiBrew:
    class BottleFileJson(TypedDict):
        cellar: str
        url: str
        sha256: str

    class FormulaJson(TypedDict, total=False):
        name: str
        full_name: str
        aliases: 'list[str]'
        versions: 'dict[str, Any]'
        revision: int
        dependencies: 'list[str]'
        build_dependencies: 'list[str]'
        test_dependencies: 'list[str]'
        recommended_dependencies: 'list[str]'
        optional_dependencies: 'list[str]'
        bottle: 'dict[str, Any]'
        keg_only: bool

    @staticmethod
    def formula(paths: Paths, name: str, *, force: bool = False) \
            -> 'FormulaJson':
        cache = os.path.join(paths.api, 'formula', f'{name}.json')
        return Curl.json(
            cache, f'https://formulae.brew.sh/api/formula/{name}.json',
            force=force)

    @staticmethod
    def readJws(fname: str) -> 'list[FormulaJson]':
        ''' Payload of Homebrew's signed bulk cache (signature not checked) '''
        with open(fname) as fp:
            payload = json.load(fp)['payload']
        if not payload.lstrip().startswith('['):
            payload = base64.urlsafe_b64decode(
                payload + '=' * (-len(payload) % 4)).decode('utf8')
        data = json.loads(payload)
        assert isinstance(data, list), f'unsupported formula cache {fname}'
        return data


# -----------------------------------
#  Curl
# -----------------------------------

class Curl:
    @staticmethod
    def json(
        fname: str, url: str, headers: 'dict[str,str]|None' = None,
        *, force: bool = False
    ) -> Any:
        ''' Download file + parse json result. '''
        Curl.file(fname, url, headers, force=force, progress=False)
        with open(fname) as fp:
            return json.load(fp)

    @staticmethod
    def file(
        fname: str, url: str, headers: 'dict[str,str]|None' = None,
        *, force: bool = True, progress: bool = True
    ) -> str:
        '''
        Download raw data to file. Creates an intermediate ".incomplete" file.
        Raises `DownloadError`
        '''
        if force or not os.path.isfile(fname):
            os.makedirs(os.path.dirname(fname), exist_ok=True)
            tmp_file = fname + '.incomplete'

            opener = Req.build_opener()
            opener.addheaders = [('User-Agent', f'pour/{Env.VERSION}')] \
                + list((headers or {}).items())
            Req.install_opener(opener)
            try:
                if progress:
                    Req.urlretrieve(url, tmp_file, Curl.printProgress)
                    Log.info('' if Env.IS_TTY else ' done')
                else:
                    Req.urlretrieve(url, tmp_file)
            except HTTPError as e:
                Curl._discard(tmp_file)
                raise DownloadError(url, f'HTTP {e.code}', status=e.code) \
                    from e
            except (URLError, OSError) as e:
                Curl._discard(tmp_file)
                raise DownloadError(url, str(e)) from e

            os.rename(tmp_file, fname)  # atomic download, no broken files
        return fname

    @staticmethod
    def _discard(fname: str) -> None:
        if os.path.exists(fname):
            os.remove(fname)

    @staticmethod
    def printProgress(
        blocknum: int, bs: int, size: int, progress: 'list[int]' = [0]
    ) -> None:
        if size <= 0:
            return
        percent = min((blocknum * bs) / size, 1.0)
        done = int(40 * percent)
        if Env.IS_TTY:
            Log.info(f'\r[{"#" * done:<40}] {percent:.1%}', end='')
        else:
            if progress[0] != done:
                progress[0] = done
                Log.info('.', end='')


# -----------------------------------
#  Logger
# -----------------------------------

class Log:
    LEVEL = 2  # 0: error, 1: warn, 2: info, 3: debug
    _SUMMARY = None  # type: StringIO|None
    _COUNT = 0
    _COUNT_TOTAL = 0

    @staticmethod
    def _log(
        lvl: int, *msg: Any, summary: bool = False, count: bool = False,
        **kwargs: Any
    ) -> None:
        if Log.LEVEL >= lvl:
            if count and Log._COUNT_TOTAL:
                Log._COUNT += 1
                print(f'[{Log._COUNT}/{Log._COUNT_TOTAL}]', *msg, **kwargs)
            else:
                print(*msg, **kwargs)
        if summary and Log._SUMMARY:
            kwargs['file'] = Log._SUMMARY
            print(*msg, **kwargs)

    @staticmethod
    def error(*msg: Any, **kwargs: Any) -> None:
        start = '\033[31m' if Env.IS_TTY else ''
        end = '\033[0m' if Env.IS_TTY else ''
        kwargs['file'] = sys.stderr
        Log._log(0, f'{start}ERROR:', *msg, end, **kwargs)

    @staticmethod
    def main(*msg: Any, **kwargs: Any) -> None:
        Log._log(0, *msg, **kwargs)

    @staticmethod
    def warn(*msg: Any, **kwargs: Any) -> None:
        Log._log(1, '[WARN]', *msg, **kwargs)

    @staticmethod
    def info(*msg: Any, **kwargs: Any) -> None:
        Log._log(2, *msg, **kwargs)

    @staticmethod
    def debug(*msg: Any, **kwargs: Any) -> None:
        Log._log(3, *msg, **kwargs)

    # counter

    @staticmethod
    def beginCounter(total: int) -> None:
        Log._COUNT = 0
        Log._COUNT_TOTAL = total

    @staticmethod
    def endCounter() -> None:
        Log._COUNT = 0
        Log._COUNT_TOTAL = 0

    # error summary

    @staticmethod
    def beginErrorSummary() -> None:
        assert not Log._SUMMARY, 'summary already running'
        Log._SUMMARY = StringIO()

    @staticmethod
    def dumpErrorSummary() -> None:
        if Log._SUMMARY:
            if Log._SUMMARY.tell():
                print()
                print('Summary:')
                print(Log._SUMMARY.getvalue(), end='')  # no double-\n
            Log._SUMMARY.close()
            Log._SUMMARY = None


if __name__ == '__main__':
    main()
