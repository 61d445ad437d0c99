#!/usr/bin/env python3
"""
🔧 ARM Toolchain Builder
Builds an arm-none-eabi cross toolchain (binutils, gcc, newlib and optionally
gdb) from upstream GNU release archives.
"""

import argparse
import bz2
import gzip
import lzma
import os
import re
import shlex
import shutil
import subprocess
import sys
import tarfile
import urllib.error
import urllib.request
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
import yaml

__version__ = "1.0.0"

# ============================================================================
# ERRORS
# ============================================================================

class ToolchainError(RuntimeError):
    """Base class for every failure that stops the build"""

class UsageError(ToolchainError):
    pass

class NetworkError(ToolchainError):
    pass

class UnsupportedArchiveFormat(ToolchainError):
    pass

class BuildToolFailure(ToolchainError):
    pass

class MissingConfigureScript(ToolchainError):
    pass

# ============================================================================
# ENUMS AND DATA CLASSES
# ============================================================================

class PackageRole(Enum):
    """Steps of the toolchain bootstrap, valued by their build identity"""
    BINUTILS = "binutils"
    BOOTSTRAP_COMPILER = "gcc-bootstrap"
    RUNTIME_LIBRARY = "newlib"
    COMPILER = "gcc"
    DEBUGGER = "gdb"

    @property
    def package(self) -> str:
        """Upstream package the role is built from"""
        if self is PackageRole.BOOTSTRAP_COMPILER:
            return "gcc"
        return self.value

    @property
    def is_compiler(self) -> bool:
        return self in (PackageRole.BOOTSTRAP_COMPILER, PackageRole.COMPILER)

class MissingConfigurePolicy(Enum):
    FAIL = "fail"
    WARN = "warn"

BUILD_ORDER = (
    PackageRole.BINUTILS,
    PackageRole.BOOTSTRAP_COMPILER,
    PackageRole.RUNTIME_LIBRARY,
    PackageRole.COMPILER,
    PackageRole.DEBUGGER,
)

DEFAULT_TARGET = "arm-none-eabi"
LATEST = "latest"

DEFAULT_VERSIONS = {
    "binutils": "2.39",
    "gcc": "12.2.0",
    "newlib": "4.2.0.20211231",
    "gdb": "12.1",
}

GNU_KEYRING_URL = "https://ftp.gnu.org/gnu/gnu-keyring.gpg"

@dataclass(frozen=True)
class Upstream:
    """Where a package's release archives live"""
    mirror: str
    archive: str
    signed: bool = True
    subdir: str = ""

    def archive_name(self, version: str) -> str:
        return self.archive.format(version=version)

    def url_for(self, version: str) -> str:
        return f"{self.mirror}{self.subdir.format(version=version)}{self.archive_name(version)}"

UPSTREAMS = {
    "binutils": Upstream("https://ftp.gnu.org/gnu/binutils/", "binutils-{version}.tar.xz"),
    "gcc": Upstream("https://ftp.gnu.org/gnu/gcc/", "gcc-{version}.tar.xz",
                    subdir="gcc-{version}/"),
    "newlib": Upstream("https://sourceware.org/pub/newlib/", "newlib-{version}.tar.gz",
                       signed=False),
    "gdb": Upstream("https://ftp.gnu.org/gnu/gdb/", "gdb-{version}.tar.xz"),
}

# Per-target configure flags; --target and --prefix are added by the pipeline
CONFIGURE_FLAGS: Dict[str, Dict[PackageRole, Tuple[str, ...]]] = {
    "arm-none-eabi": {
        PackageRole.BINUTILS: (
            "--disable-nls",
            "--disable-werror",
            "--enable-interwork",
            "--enable-multilib",
            "--enable-plugins",
            "--enable-deterministic-archives",
        ),
        PackageRole.BOOTSTRAP_COMPILER: (
            "--enable-languages=c",
            "--without-headers",
            "--with-newlib",
            "--disable-nls",
            "--disable-shared",
            "--disable-threads",
            "--disable-libssp",
            "--disable-libgomp",
            "--disable-libmudflap",
            "--enable-interwork",
            "--enable-multilib",
            "--with-multilib-list=rmprofile",
            "--with-gnu-as",
            "--with-gnu-ld",
        ),
        PackageRole.RUNTIME_LIBRARY: (
            "--disable-nls",
            "--enable-interwork",
            "--enable-multilib",
            "--disable-newlib-supplied-syscalls",
            "--enable-newlib-reent-small",
            "--enable-newlib-nano-malloc",
            "--enable-newlib-global-atexit",
            "--enable-lite-exit",
        ),
        PackageRole.COMPILER: (
            "--enable-languages=c,c++",
            "--with-newlib",
            "--disable-nls",
            "--disable-shared",
            "--disable-threads",
            "--disable-libssp",
            "--disable-libstdcxx-pch",
            "--disable-libgomp",
            "--enable-interwork",
            "--enable-multilib",
            "--with-multilib-list=rmprofile",
            "--enable-checking=release",
            "--with-gnu-as",
            "--with-gnu-ld",
        ),
        PackageRole.DEBUGGER: (
            "--disable-nls",
            "--disable-werror",
            "--enable-interwork",
            "--enable-multilib",
            "--with-expat",
        ),
    },
}

BUILD_TARGETS = {
    PackageRole.BOOTSTRAP_COMPILER: ("all-gcc", "all-target-libgcc"),
}

INSTALL_TARGETS = {
    PackageRole.BOOTSTRAP_COMPILER: ("install-gcc", "install-target-libgcc"),
}

# Self-check targets of the math libraries bundled by download_prerequisites
CHECK_TARGETS = ("check-gmp", "check-mpfr", "check-mpc", "check-isl")

@dataclass(frozen=True)
class PackageSpec:
    """One package to build, fully resolved"""
    role: PackageRole
    name: str
    version: str
    url: str
    archive: str
    signature: Optional[str] = None
    configure_flags: Tuple[str, ...] = ()

    @property
    def identity(self) -> str:
        return self.role.value

    @property
    def source_dir_name(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def signature_url(self) -> Optional[str]:
        if not self.signature:
            return None
        return sibling_url(self.url, self.signature)

@dataclass(frozen=True)
class BuildConfig:
    """Build configuration, assembled once per run"""
    target: str = DEFAULT_TARGET
    root: Path = Path(".")
    prefix: Optional[Path] = None
    destdir: Optional[Path] = None

    # Versions: package name -> explicit version or LATEST
    versions: Mapping[str, str] = field(default_factory=dict)
    use_latest: bool = False

    # Components
    with_gdb: bool = False
    with_sysroot: bool = False

    # Build options
    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    optimize: str = "2"
    cflags: Tuple[str, ...] = ()
    cxxflags: Tuple[str, ...] = ()
    ldflags: Tuple[str, ...] = ()
    # Extra configure flags keyed by role identity, "all" for every package
    configure_flags: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    run_checks: bool = False

    # Policies
    log_history: int = 3
    missing_configure: MissingConfigurePolicy = MissingConfigurePolicy.FAIL
    trust_cached_archives: bool = True

    verbose: bool = False

    @property
    def log_dir(self) -> Path:
        return self.root / "log"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def source_dir(self) -> Path:
        return self.root / "source"

    @property
    def sysroot(self) -> Path:
        return self.root / "sysroot"

    @property
    def install_prefix(self) -> Path:
        return self.prefix if self.prefix is not None else self.root / "cross-tools"

    @property
    def staged_prefix(self) -> Path:
        """Where the prefix actually lands on disk once DESTDIR is applied"""
        prefix = self.install_prefix
        if self.destdir is None:
            return prefix
        return self.destdir / prefix.relative_to(prefix.anchor)

    @property
    def tool_dir(self) -> Path:
        return self.staged_prefix / "bin"

    @property
    def keyring(self) -> Path:
        return self.source_dir / GNU_KEYRING_URL.rsplit('/', 1)[1]

    def extra_flags_for(self, role: PackageRole) -> Tuple[str, ...]:
        return (tuple(self.configure_flags.get("all", ()))
                + tuple(self.configure_flags.get(role.value, ())))

# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

class Color:
    """ANSI color codes"""
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    BOLD = '\033[1m'
    RESET = '\033[0m'

def log_info(msg: str):
    print(f"{Color.BLUE}[INFO]{Color.RESET} {msg}")

def log_success(msg: str):
    print(f"{Color.GREEN}[SUCCESS]{Color.RESET} {msg}")

def log_warning(msg: str):
    print(f"{Color.YELLOW}[WARNING]{Color.RESET} {msg}")

def log_error(msg: str):
    print(f"{Color.RED}[ERROR]{Color.RESET} {msg}", file=sys.stderr)

def log_step(step: str, msg: str):
    print(f"\n{Color.CYAN}[{step}]{Color.RESET} {Color.BOLD}{msg}{Color.RESET}")

def sibling_url(url: str, name: str) -> str:
    """URL of `name` in the same remote directory as `url`"""
    return f"{url.rsplit('/', 1)[0]}/{name}"

@contextmanager
def pushd(path: Path) -> Iterator[Path]:
    """Run the enclosed block with `path` as the working directory"""
    previous = os.getcwd()
    os.chdir(path)
    try:
        yield path
    finally:
        os.chdir(previous)

def run_command(cmd: Sequence, cwd: Optional[Path] = None,
                env: Optional[Dict[str, str]] = None, capture: bool = False,
                check: bool = True, verbose: bool = False,
                stdout=None) -> subprocess.CompletedProcess:
    """
    Run a command without logging it to a build log
    """
    args = [str(arg) for arg in cmd]

    if verbose:
        log_info(f"Running: {shlex.join(args)}")
        if cwd:
            log_info(f"  in: {cwd}")

    current_env = os.environ.copy()
    if env:
        current_env.update(env)

    try:
        result = subprocess.run(
            args, cwd=cwd, env=current_env,
            stdout=subprocess.PIPE if capture else stdout,
            stderr=subprocess.PIPE if capture else None,
        )
    except FileNotFoundError as e:
        raise BuildToolFailure(f"Command not found: {args[0]}") from e

    if check and result.returncode != 0:
        error_msg = f"{args[0]} failed with code {result.returncode}"
        if result.stderr:
            error_msg += f"\nStderr: {result.stderr.decode(errors='replace')[:500]}"
        raise BuildToolFailure(error_msg)

    return result

def fetch_text(url: str) -> str:
    """Fetch a text document, e.g. a mirror's directory listing"""
    try:
        with urllib.request.urlopen(url) as response:
            charset = response.headers.get_content_charset() or "utf-8"
            return response.read().decode(charset, errors="replace")
    except (urllib.error.URLError, OSError) as e:
        raise NetworkError(f"Failed to fetch {url}: {e}") from e

def download_file(url: str, dest: Path) -> Path:
    """
    Download `url` to `dest`; the file only appears once complete
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")

    log_info(f"Downloading: {url}")
    try:
        urllib.request.urlretrieve(url, partial)
    except (urllib.error.URLError, OSError) as e:
        if partial.exists():
            partial.unlink()
        raise NetworkError(f"Failed to download {url}: {e}") from e

    os.replace(partial, dest)
    log_success(f"Downloaded: {dest}")
    return dest

# ============================================================================
# BUILD LOGS AND COMMAND EXECUTION
# ============================================================================

class LogSet:
    """
    Rotated build logs, one family per (package, phase).

    The current log is `<identity>-<phase>.log`; older runs are kept as
    `.log.0` (newest) up to `.log.<history - 1>` (oldest).
    """

    def __init__(self, log_dir: Path, history: int = 3):
        self.log_dir = log_dir
        self.history = history

    def path(self, identity: str, phase: str) -> Path:
        return self.log_dir / f"{identity}-{phase}.log"

    def rotated(self, identity: str, phase: str, index: int) -> Path:
        current = self.path(identity, phase)
        return current.with_name(f"{current.name}.{index}")

    def rotate(self, identity: str, phase: str) -> Path:
        """Shift existing logs down one slot and return the path to write"""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        current = self.path(identity, phase)
        if self.history <= 0:
            return current

        oldest = self.rotated(identity, phase, self.history - 1)
        if oldest.exists():
            oldest.unlink()
        for index in range(self.history - 2, -1, -1):
            older = self.rotated(identity, phase, index)
            if older.exists():
                os.replace(older, self.rotated(identity, phase, index + 1))
        if current.exists():
            os.replace(current, self.rotated(identity, phase, 0))
        return current

@dataclass
class CommandResult:
    """Outcome of a logged command"""
    args: List[str]
    returncode: int
    log_file: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.returncode == 0

class CommandRunner:
    """Runs a command, writing its combined output to a log file and,
    when verbose, echoing it to the console as it arrives."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def run(self, cmd: Sequence, log_file: Path, cwd: Optional[Path] = None,
            env: Optional[Dict[str, str]] = None) -> CommandResult:
        args = [str(arg) for arg in cmd]
        log_file.parent.mkdir(parents=True, exist_ok=True)

        with open(log_file, "w", encoding="utf-8") as log:
            log.write(f"$ {shlex.join(args)}\n")
            log.flush()
            try:
                process = subprocess.Popen(
                    args, cwd=cwd, env=env,
                    stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                    text=True, encoding="utf-8", errors="replace",
                )
            except FileNotFoundError as e:
                raise BuildToolFailure(f"Command not found: {args[0]}") from e

            for line in process.stdout:
                log.write(line)
                if self.verbose:
                    sys.stdout.write(line)
            process.stdout.close()
            returncode = process.wait()

        return CommandResult(args, returncode, log_file)

# ============================================================================
# SOURCE MANAGEMENT
# ============================================================================

VERSION_PATTERN = r"(\d+(?:\.\d+){0,3})(?!\d)"

def version_key(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in version.split("."))

class VersionResolver:
    """Find the newest release advertised by a mirror's directory listing"""

    def resolve(self, mirror_url: str, name_prefix: str) -> str:
        """
        Return the highest `<name_prefix><version>` linked from the listing,
        or "" when the listing is unreachable or has no such entry.
        """
        try:
            listing = fetch_text(mirror_url)
        except NetworkError as e:
            log_warning(str(e))
            return ""

        # The prefix must start the last path segment of the link
        pattern = re.compile(
            r"""href\s*=\s*["']?(?:[^"'\s>]*/)?"""
            + re.escape(name_prefix) + VERSION_PATTERN,
            re.IGNORECASE,
        )
        found = sorted(set(pattern.findall(listing)), key=version_key, reverse=True)
        return found[0] if found else ""

class SignatureVerifier:
    """Check detached signatures with gpgv"""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def verify(self, keyring: Path, signature: Path,
               archive: Optional[Path] = None) -> bool:
        if not keyring.is_file():
            log_warning(f"Keyring not found: {keyring}")
            return False
        if not signature.is_file():
            log_warning(f"Signature not found: {signature}")
            return False

        cmd = ["gpgv", "--keyring", keyring.absolute(), signature.absolute()]
        if archive is not None:
            cmd.append(archive.absolute())
        try:
            result = run_command(cmd, capture=True, check=False, verbose=self.verbose)
        except BuildToolFailure as e:
            log_warning(f"Cannot verify {signature.name}: {e}")
            return False
        return result.returncode == 0

class ArchiveFetcher:
    """Download archives and signatures into the source cache"""

    def __init__(self, cache_dir: Path, keyring: Path,
                 verifier: Optional[SignatureVerifier] = None,
                 trust_cached: bool = True):
        self.cache_dir = cache_dir
        self.keyring = keyring
        self.verifier = verifier or SignatureVerifier()
        self.trust_cached = trust_cached

    def fetch_keyring(self, url: str) -> Path:
        if self.keyring.exists():
            log_info(f"Using cached keyring: {self.keyring.name}")
            return self.keyring
        return download_file(url, self.keyring)

    def fetch(self, url: str, filename: str, signature: Optional[str] = None) -> Path:
        archive = self.cache_dir / filename
        sig_path = None

        if signature:
            sig_path = self.cache_dir / signature
            if not sig_path.exists():
                download_file(sibling_url(url, signature), sig_path)

        if archive.exists():
            log_info(f"Using cached archive: {filename}")
            if sig_path is None:
                log_warning(f"{filename} has no signature to check")
                return archive
            if self._verified(archive, sig_path):
                return archive
            if self.trust_cached:
                log_warning(f"Cached {filename} failed signature verification, using it anyway")
                return archive
            log_warning(f"Cached {filename} failed signature verification, downloading again")
            archive.unlink()

        download_file(url, archive)
        if sig_path is not None and not self._verified(archive, sig_path):
            log_warning(f"{filename} failed signature verification")
        return archive

    def _verified(self, archive: Path, signature: Path) -> bool:
        ok = self.verifier.verify(self.keyring, signature, archive)
        if ok:
            log_info(f"Good signature: {signature.name}")
        return ok

class ArchiveExtractor:
    """Unpack archives, choosing the method by file suffix"""

    FORMATS = (
        (".tar", "_untar"),
        (".tar.gz", "_untar"),
        (".tgz", "_untar"),
        (".tar.bz2", "_untar"),
        (".tbz2", "_untar"),
        (".tbz", "_untar"),
        (".tar.xz", "_untar"),
        (".txz", "_untar"),
        (".tar.lzma", "_untar"),
        (".gz", "_gunzip"),
        (".bz2", "_bunzip2"),
        (".xz", "_unxz"),
        (".lzma", "_unlzma"),
        (".zip", "_unzip"),
        (".7z", "_un7z"),
        (".z", "_uncompress"),
        (".rar", "_unrar"),
    )

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def handler_for(self, archive: Path) -> str:
        name = archive.name.lower()
        matches = [fmt for fmt in self.FORMATS if name.endswith(fmt[0])]
        if not matches:
            raise UnsupportedArchiveFormat(f"Unsupported archive format: {archive.name}")
        return max(matches, key=lambda fmt: len(fmt[0]))[1]

    def extract(self, archive: Path, target_dir: Path) -> Path:
        archive = Path(archive).absolute()
        method = getattr(self, self.handler_for(archive))

        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        log_info(f"Extracting: {archive.name} -> {target_dir}")

        with pushd(target_dir):
            method(archive)
        return target_dir

    def _untar(self, archive: Path):
        try:
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(".")
        except tarfile.TarError as e:
            raise BuildToolFailure(f"Failed to extract tar archive {archive.name}: {e}") from e

    def _decompress(self, archive: Path, opener):
        output = Path(archive.stem)
        try:
            with opener(archive, "rb") as src, open(output, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except (OSError, EOFError, lzma.LZMAError) as e:
            output.unlink(missing_ok=True)
            raise BuildToolFailure(f"Failed to decompress {archive.name}: {e}") from e

    def _gunzip(self, archive: Path):
        self._decompress(archive, gzip.open)

    def _bunzip2(self, archive: Path):
        self._decompress(archive, bz2.open)

    def _unxz(self, archive: Path):
        self._decompress(archive, lzma.open)

    def _unlzma(self, archive: Path):
        self._decompress(
            archive, lambda path, mode: lzma.open(path, mode, format=lzma.FORMAT_ALONE))

    def _unzip(self, archive: Path):
        try:
            with zipfile.ZipFile(archive, 'r') as zip_ref:
                zip_ref.extractall(".")
        except zipfile.BadZipFile as e:
            raise BuildToolFailure(f"Failed to extract zip archive {archive.name}: {e}") from e

    def _un7z(self, archive: Path):
        run_command(["7z", "x", "-y", archive], capture=True, verbose=self.verbose)

    def _uncompress(self, archive: Path):
        with open(archive.stem, "wb") as dst:
            run_command(["uncompress", "-c", archive], stdout=dst, verbose=self.verbose)

    def _unrar(self, archive: Path):
        run_command(["unrar", "x", "-o+", archive], capture=True, verbose=self.verbose)

# ============================================================================
# BUILDERS
# ============================================================================

class PackageBuildStep:
    """Fetch, configure, build and install one package"""

    def __init__(self, config: BuildConfig, fetcher: ArchiveFetcher,
                 extractor: ArchiveExtractor, runner: CommandRunner, logs: LogSet):
        self.config = config
        self.fetcher = fetcher
        self.extractor = extractor
        self.runner = runner
        self.logs = logs

    def build(self, spec: PackageSpec, configure_args: Optional[Sequence[str]] = None,
              tool_dir: Optional[Path] = None) -> Path:
        """
        Build `spec` and return the directory holding the installed tools.

        `tool_dir` is the bin directory of the packages installed so far; it
        leads PATH for every command of this step.
        """
        role = spec.role
        log_step(spec.identity, f"Building {spec.name} {spec.version}")
        args = spec.configure_flags if configure_args is None else configure_args

        source_dir = self.ensure_source(spec)
        env = self._prepare_build_env(tool_dir)

        if role.is_compiler:
            self._download_prerequisites(spec, source_dir, env)

        build_dir = self.config.build_dir / spec.identity
        build_dir.mkdir(parents=True, exist_ok=True)

        self._configure(spec, source_dir, build_dir, args, env)

        self._run_phase(spec, "build",
                        ["make", f"-j{self.config.jobs}", *BUILD_TARGETS.get(role, ())],
                        build_dir, env)

        if role is PackageRole.COMPILER and self.config.run_checks:
            self._run_phase(spec, "check", ["make", *CHECK_TARGETS], build_dir, env)

        install_cmd = ["make"]
        if self.config.destdir is not None:
            install_cmd.append(f"DESTDIR={self.config.destdir}")
        install_cmd.extend(INSTALL_TARGETS.get(role, ("install",)))
        self._run_phase(spec, "install", install_cmd, build_dir, env)

        log_success(f"Installed {spec.identity} {spec.version}")
        return self.config.tool_dir

    def ensure_source(self, spec: PackageSpec) -> Path:
        """Fetch and extract the package unless its sources are already there"""
        source_dir = self.config.build_dir / spec.source_dir_name
        if source_dir.is_dir():
            log_info(f"Using extracted sources: {source_dir}")
            return source_dir

        archive = self.fetcher.fetch(spec.url, spec.archive, spec.signature)
        self.extractor.extract(archive, self.config.build_dir)
        if not source_dir.is_dir():
            raise BuildToolFailure(f"{spec.archive} did not unpack into {source_dir.name}")
        return source_dir

    def _prepare_build_env(self, tool_dir: Optional[Path]) -> Dict[str, str]:
        """Prepare build environment variables"""
        env = os.environ.copy()

        env['CFLAGS'] = ' '.join([f"-O{self.config.optimize}", *self.config.cflags])
        env['CXXFLAGS'] = ' '.join([f"-O{self.config.optimize}", *self.config.cxxflags])
        if self.config.ldflags:
            env['LDFLAGS'] = ' '.join(self.config.ldflags)

        if tool_dir is not None:
            env['PATH'] = f"{tool_dir}{os.pathsep}{env.get('PATH', '')}"

        return env

    def _download_prerequisites(self, spec: PackageSpec, source_dir: Path, env: Dict[str, str]):
        script = source_dir / "contrib" / "download_prerequisites"
        if not script.is_file() or (source_dir / "gmp").exists():
            return
        log_info("Downloading GCC prerequisites")
        self._run_phase(spec, "prerequisites", [str(script)], source_dir, env)

    def _configure(self, spec: PackageSpec, source_dir: Path, build_dir: Path,
                   args: Sequence[str], env: Dict[str, str]):
        script = source_dir / "configure"
        if not script.is_file():
            message = f"No configure script in {source_dir}"
            if self.config.missing_configure is MissingConfigurePolicy.WARN:
                log_warning(f"{message}, skipping configure")
                return
            raise MissingConfigureScript(message)

        self._run_phase(spec, "configure", [str(script), *args], build_dir, env)

    def _run_phase(self, spec: PackageSpec, phase: str, cmd: Sequence[str],
                   cwd: Path, env: Dict[str, str]) -> CommandResult:
        log_file = self.logs.rotate(spec.identity, phase)
        log_info(f"{spec.identity}: {phase} (log: {log_file})")

        result = self.runner.run(cmd, log_file, cwd=cwd, env=env)
        if not result.success:
            raise BuildToolFailure(
                f"{spec.identity} {phase} failed with code {result.returncode}, "
                f"see {log_file}")
        return result

class ToolchainPipeline:
    """Build the whole toolchain, package by package, stopping at the first failure"""

    def __init__(self, config: BuildConfig,
                 resolver: Optional[VersionResolver] = None,
                 fetcher: Optional[ArchiveFetcher] = None,
                 extractor: Optional[ArchiveExtractor] = None,
                 runner: Optional[CommandRunner] = None):
        self.config = config
        self.resolver = resolver or VersionResolver()
        self.fetcher = fetcher or ArchiveFetcher(
            config.source_dir,
            config.keyring,
            verifier=SignatureVerifier(verbose=config.verbose),
            trust_cached=config.trust_cached_archives,
        )
        self.step = PackageBuildStep(
            config,
            self.fetcher,
            extractor or ArchiveExtractor(verbose=config.verbose),
            runner or CommandRunner(verbose=config.verbose),
            LogSet(config.log_dir, config.log_history),
        )

    def roles(self) -> List[PackageRole]:
        return [role for role in BUILD_ORDER
                if role is not PackageRole.DEBUGGER or self.config.with_gdb]

    def packages(self) -> List[str]:
        names = []
        for role in self.roles():
            if role.package not in names:
                names.append(role.package)
        return names

    def latest_version(self, name: str) -> str:
        return self.resolver.resolve(UPSTREAMS[name].mirror, f"{name}-")

    def resolve_versions(self) -> Dict[str, str]:
        """Explicit versions win over resolved latest ones, which win over defaults"""
        versions = {}
        for name in self.packages():
            requested = self.config.versions.get(name)
            if requested and requested != LATEST:
                versions[name] = requested
                continue
            if requested == LATEST or self.config.use_latest:
                latest = self.latest_version(name)
                if latest:
                    log_info(f"Latest {name}: {latest}")
                    versions[name] = latest
                    continue
                log_warning(f"Could not resolve the latest {name}, "
                            f"using {DEFAULT_VERSIONS[name]}")
            versions[name] = DEFAULT_VERSIONS[name]
        return versions

    def dump_versions(self) -> List[Tuple[str, str, str]]:
        """(package, default version, latest version) for every package"""
        return [(name, DEFAULT_VERSIONS[name], self.latest_version(name))
                for name in UPSTREAMS]

    def package_specs(self, versions: Mapping[str, str]) -> List[PackageSpec]:
        try:
            flag_table = CONFIGURE_FLAGS[self.config.target]
        except KeyError:
            raise UsageError(f"Unsupported target: {self.config.target}") from None

        specs = []
        for role in self.roles():
            name = role.package
            version = versions[name]
            upstream = UPSTREAMS[name]
            archive = upstream.archive_name(version)
            configure = (
                f"--target={self.config.target}",
                f"--prefix={self.config.install_prefix}",
                *flag_table[role],
                *self._sysroot_flags(role),
                *self.config.extra_flags_for(role),
            )
            specs.append(PackageSpec(
                role=role,
                name=name,
                version=version,
                url=upstream.url_for(version),
                archive=archive,
                signature=f"{archive}.sig" if upstream.signed else None,
                configure_flags=configure,
            ))
        return specs

    def _sysroot_flags(self, role: PackageRole) -> Tuple[str, ...]:
        if not self.config.with_sysroot or not role.is_compiler:
            return ()
        return (f"--with-sysroot={self.config.sysroot}",
                "--with-native-system-header-dir=/usr/include")

    def prepare_workspace(self):
        for directory in (self.config.log_dir, self.config.build_dir,
                          self.config.source_dir, self.config.install_prefix):
            directory.mkdir(parents=True, exist_ok=True)

    def stage_sysroot(self, runtime: PackageSpec) -> Path:
        """Copy the C library headers into the sysroot before any compiler is built"""
        source_dir = self.step.ensure_source(runtime)
        headers = source_dir / "newlib" / "libc" / "include"
        staged = self.config.sysroot / "usr" / "include"
        log_info(f"Staging {runtime.name} headers into {staged}")
        shutil.copytree(headers, staged, dirs_exist_ok=True)
        return staged

    def run(self) -> List[PackageSpec]:
        versions = self.resolve_versions()
        specs = self.package_specs(versions)

        self.prepare_workspace()
        if any(spec.signature for spec in specs):
            self.fetcher.fetch_keyring(GNU_KEYRING_URL)

        if self.config.with_sysroot:
            runtime = next(spec for spec in specs
                           if spec.role is PackageRole.RUNTIME_LIBRARY)
            self.stage_sysroot(runtime)

        tool_dir = None
        for spec in specs:
            tool_dir = self.step.build(spec, spec.configure_flags, tool_dir)

        log_success("Toolchain built successfully")
        return specs

# ============================================================================
# VALIDATION AND INSTALLATION
# ============================================================================

class ToolchainValidator:
    """Validate built toolchain"""

    TOOLS = ("gcc", "g++", "ld", "ar", "as", "objcopy")

    def __init__(self, config: BuildConfig):
        self.config = config

    def validate(self) -> bool:
        log_step("VALIDATION", "Validating toolchain")

        tools = list(self.TOOLS)
        if self.config.with_gdb:
            tools.append("gdb")

        bin_dir = self.config.tool_dir
        missing = [f"{self.config.target}-{tool}" for tool in tools
                   if not (bin_dir / f"{self.config.target}-{tool}").exists()]

        if missing:
            log_error(f"Missing binaries: {', '.join(missing)}")
            return False

        log_info(f"All required binaries found in {bin_dir}")
        return True

class ToolchainInstaller:
    """Write the version record and environment script into the prefix"""

    def __init__(self, config: BuildConfig):
        self.config = config

    def install(self, specs: Sequence[PackageSpec]):
        prefix = self.config.staged_prefix
        prefix.mkdir(parents=True, exist_ok=True)
        self._create_version_file(prefix, specs)
        self._create_env_script(prefix)
        log_success(f"Toolchain installed to {prefix}")

    def _create_version_file(self, prefix: Path, specs: Sequence[PackageSpec]):
        version_file = prefix / "VERSION.txt"
        lines = [
            f"Target: {self.config.target}",
            f"Prefix: {self.config.install_prefix}",
            "",
            "Versions:",
            *(f"  - {spec.identity}: {spec.version}" for spec in specs),
        ]
        version_file.write_text("\n".join(lines) + "\n")
        log_info(f"Version file created: {version_file}")

    def _create_env_script(self, prefix: Path):
        env_file = prefix / "environment"

        env_script = f"""#!/bin/sh
# Toolchain environment setup for {self.config.target}

export TOOLCHAIN_PREFIX="{self.config.install_prefix}"
export TOOLCHAIN_TARGET="{self.config.target}"
export PATH="${{TOOLCHAIN_PREFIX}}/bin:${{PATH}}"

export CC="${{TOOLCHAIN_TARGET}}-gcc"
export CXX="${{TOOLCHAIN_TARGET}}-g++"
export AR="${{TOOLCHAIN_TARGET}}-ar"
export AS="${{TOOLCHAIN_TARGET}}-as"
export LD="${{TOOLCHAIN_TARGET}}-ld"
export OBJCOPY="${{TOOLCHAIN_TARGET}}-objcopy"
export OBJDUMP="${{TOOLCHAIN_TARGET}}-objdump"
export SIZE="${{TOOLCHAIN_TARGET}}-size"
"""

        env_file.write_text(env_script)
        env_file.chmod(0o755)
        log_info(f"Environment script created: {env_file}")

# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG_KEYS = {
    "target", "root", "prefix", "destdir", "versions", "latest", "with_gdb",
    "with_sysroot", "jobs", "optimize", "cflags", "cxxflags", "ldflags",
    "configure_flags", "run_checks", "log_history", "missing_configure",
    "trust_cached_archives", "verbose",
}

def load_config_file(path: Path) -> Dict:
    """Read build settings from a YAML file"""
    try:
        with open(path, encoding="utf-8") as f:
            settings = yaml.safe_load(f)
    except OSError as e:
        raise UsageError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise UsageError(f"Invalid config file {path}: {e}") from e

    if settings is None:
        return {}
    if not isinstance(settings, dict):
        raise UsageError(f"Config file {path} must contain a mapping")

    unknown = sorted(set(settings) - CONFIG_KEYS)
    if unknown:
        raise UsageError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return settings

def parse_configure_flags(values: Sequence[str],
                          base: Optional[Mapping] = None) -> Dict[str, Tuple[str, ...]]:
    """Group `[IDENTITY:]FLAG` entries by package; bare flags apply to all"""
    identities = {role.value for role in PackageRole}
    flags: Dict[str, List[str]] = {}

    for identity, entries in (base or {}).items():
        if identity != "all" and identity not in identities:
            raise UsageError(f"Unknown package in configure_flags: {identity}")
        if isinstance(entries, str):
            entries = [entries]
        flags.setdefault(identity, []).extend(str(entry) for entry in entries)

    for value in values:
        identity, sep, flag = value.partition(":")
        if sep and identity in identities:
            flags.setdefault(identity, []).append(flag)
        else:
            flags.setdefault("all", []).append(value)

    return {identity: tuple(entries) for identity, entries in flags.items()}

def _as_tuple(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(value.split())
    return tuple(str(item) for item in value)

def _as_int(key: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise UsageError(f"{key} must be an integer, got {value!r}") from None

def build_config(args: argparse.Namespace) -> BuildConfig:
    """Defaults, overlaid by the config file, overlaid by the command line"""
    settings = load_config_file(Path(args.config)) if args.config else {}

    root = Path(args.root or settings.get("root") or ".").resolve()
    prefix = args.prefix or settings.get("prefix")
    destdir = args.destdir or settings.get("destdir")

    configured_versions = settings.get("versions") or {}
    if not isinstance(configured_versions, dict):
        raise UsageError("versions must map package names to versions")
    versions = {str(k): str(v) for k, v in configured_versions.items()}
    for name in UPSTREAMS:
        value = getattr(args, f"{name}_version")
        if value:
            versions[name] = value
    unknown = sorted(set(versions) - set(UPSTREAMS))
    if unknown:
        raise UsageError(f"Unknown packages in versions: {', '.join(unknown)}")

    jobs = _as_int("jobs", args.jobs or settings.get("jobs") or os.cpu_count() or 1)
    if jobs < 1:
        raise UsageError(f"Number of jobs must be positive, got {jobs}")

    log_history = _as_int("log_history", args.log_history if args.log_history is not None
                          else settings.get("log_history", 3))
    if log_history < 0:
        raise UsageError(f"Log history cannot be negative, got {log_history}")

    target = args.target or settings.get("target") or DEFAULT_TARGET
    if target not in CONFIGURE_FLAGS:
        raise UsageError(f"Unsupported target: {target}")

    policy = "warn" if args.allow_missing_configure \
        else settings.get("missing_configure", "fail")
    try:
        missing_configure = MissingConfigurePolicy(policy)
    except ValueError:
        raise UsageError(f"missing_configure must be 'fail' or 'warn', got {policy!r}") from None

    return BuildConfig(
        target=target,
        root=root,
        prefix=Path(prefix).resolve() if prefix else None,
        destdir=Path(destdir).resolve() if destdir else None,

        versions=versions,
        use_latest=args.latest or bool(settings.get("latest", False)),

        with_gdb=args.with_gdb or bool(settings.get("with_gdb", False)),
        with_sysroot=args.with_sysroot or bool(settings.get("with_sysroot", False)),

        jobs=jobs,
        optimize=args.optimize or str(settings.get("optimize", "2")),
        cflags=_as_tuple(settings.get("cflags")) + tuple(args.cflags),
        cxxflags=_as_tuple(settings.get("cxxflags")) + tuple(args.cxxflags),
        ldflags=_as_tuple(settings.get("ldflags")) + tuple(args.ldflags),
        configure_flags=parse_configure_flags(args.configure_flags,
                                              settings.get("configure_flags")),
        run_checks=args.run_checks or bool(settings.get("run_checks", False)),

        log_history=log_history,
        missing_configure=missing_configure,
        trust_cached_archives=(not args.strict_cache
                               and bool(settings.get("trust_cached_archives", True))),

        verbose=args.verbose or bool(settings.get("verbose", False)),
    )

# ============================================================================
# MAIN PROGRAM
# ============================================================================

class ToolchainArgumentParser(argparse.ArgumentParser):
    """Argument parser reporting usage errors with exit status 1"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")

def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser"""

    parser = ToolchainArgumentParser(
        prog="build-arm-toolchain",
        description="🔧 ARM Toolchain Builder - Build an arm-none-eabi GCC toolchain from source",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build binutils, gcc and newlib with the default versions
  build-arm-toolchain

  # Build the newest releases, including gdb, into /opt/arm
  build-arm-toolchain --latest --with-gdb --prefix /opt/arm

  # Pin binutils, take the newest gcc
  build-arm-toolchain --binutils-version 2.39 --gcc-version

  # Show default and newest available versions
  build-arm-toolchain --dump-latest

  # Pass an extra configure flag to gcc only (use = for values starting with -)
  build-arm-toolchain --configure-flag=gcc:--enable-lto --cflag=-pipe
"""
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f"%(prog)s {__version__}"
    )

    # Version selection
    version_group = parser.add_argument_group('Version Selection')
    version_group.add_argument(
        '--latest', '-l',
        action='store_true',
        help='Use the newest version of every package'
    )
    version_group.add_argument(
        '--dump-latest',
        action='store_true',
        help='Print default and newest versions, then exit'
    )
    for name in UPSTREAMS:
        version_group.add_argument(
            f'--{name}-version',
            nargs='?',
            const=LATEST,
            metavar='VERSION',
            help=f'{name} version (default: {DEFAULT_VERSIONS[name]}; '
                 f'without a value: newest)'
        )

    # Components
    component_group = parser.add_argument_group('Components')
    component_group.add_argument(
        '--with-gdb',
        action='store_true',
        help='Also build gdb'
    )
    component_group.add_argument(
        '--with-sysroot',
        action='store_true',
        help='Stage newlib headers into a sysroot and build gcc against it'
    )
    component_group.add_argument(
        '--target',
        choices=sorted(CONFIGURE_FLAGS),
        help=f'Target triple (default: {DEFAULT_TARGET})'
    )

    # Directories
    dir_group = parser.add_argument_group('Directories')
    dir_group.add_argument(
        '--root',
        help='Working directory holding log/, build/ and source/ (default: .)'
    )
    dir_group.add_argument(
        '--prefix',
        help='Installation prefix (default: ROOT/cross-tools)'
    )
    dir_group.add_argument(
        '--destdir',
        help='Install under this destination root instead of directly into the prefix'
    )

    # Build options
    options_group = parser.add_argument_group('Build Options')
    options_group.add_argument(
        '--config',
        help='YAML file with build settings'
    )
    options_group.add_argument(
        '--jobs', '-j',
        type=int,
        help='Number of parallel jobs (default: number of processors)'
    )
    options_group.add_argument(
        '--optimize',
        choices=['0', '1', '2', '3', 's', 'g'],
        help='Optimization level for the host tools (default: 2)'
    )
    options_group.add_argument(
        '--run-checks',
        action='store_true',
        help="Run the self-checks of gcc's bundled math libraries"
    )
    options_group.add_argument(
        '--allow-missing-configure',
        action='store_true',
        help='Warn instead of failing when a package has no configure script'
    )
    options_group.add_argument(
        '--strict-cache',
        action='store_true',
        help='Download cached archives again when their signature does not verify'
    )
    options_group.add_argument(
        '--log-history',
        type=int,
        help='Number of rotated logs kept per package and phase (default: 3)'
    )
    options_group.add_argument(
        '--skip-validation',
        action='store_true',
        help='Do not check the installed binaries after building'
    )

    # Custom flags
    flags_group = parser.add_argument_group('Custom Flags')
    flags_group.add_argument(
        '--configure-flag',
        action='append',
        dest='configure_flags',
        default=[],
        metavar='[PACKAGE:]FLAG',
        help='Additional configure flag, optionally for one package only '
             '(can be used multiple times)'
    )
    flags_group.add_argument(
        '--cflag',
        action='append',
        dest='cflags',
        default=[],
        help='Additional CFLAG (can be used multiple times)'
    )
    flags_group.add_argument(
        '--cxxflag',
        action='append',
        dest='cxxflags',
        default=[],
        help='Additional CXXFLAG (can be used multiple times)'
    )
    flags_group.add_argument(
        '--ldflag',
        action='append',
        dest='ldflags',
        default=[],
        help='Additional LDFLAG (can be used multiple times)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Echo build output to the console'
    )

    return parser

def print_versions(rows: Sequence[Tuple[str, str, str]]):
    print(f"{Color.BOLD}{'Package':<10} {'Default':<16} {'Latest':<16}{Color.RESET}")
    for name, default, latest in rows:
        print(f"{name:<10} {default:<16} {latest or '?':<16}")

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main program entry point"""

    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except UsageError as e:
        parser.print_usage(sys.stderr)
        log_error(str(e))
        return 1

    pipeline = ToolchainPipeline(config)

    if args.dump_latest:
        print_versions(pipeline.dump_versions())
        return 0

    print(f"""
{Color.BOLD}{Color.CYAN}🔧 ARM Toolchain Builder{Color.RESET}
{Color.BOLD}Target:     {Color.GREEN}{config.target}{Color.RESET}
{Color.BOLD}Prefix:     {Color.GREEN}{config.install_prefix}{Color.RESET}
{Color.BOLD}Root:       {Color.GREEN}{config.root}{Color.RESET}
{Color.BOLD}Jobs:       {Color.GREEN}{config.jobs}{Color.RESET}
    """)

    try:
        specs = pipeline.run()

        if not args.skip_validation:
            if not ToolchainValidator(config).validate():
                log_error("Validation failed")
                return 1

        ToolchainInstaller(config).install(specs)

        print(f"""
{Color.BOLD}{Color.GREEN}✅ Build completed successfully!{Color.RESET}

Your toolchain is installed at: {Color.CYAN}{config.install_prefix}{Color.RESET}

To use the toolchain:
  {Color.CYAN}. {config.install_prefix}/environment{Color.RESET}
  {Color.CYAN}{config.target}-gcc -mcpu=cortex-m4 -mthumb -o program.elf program.c{Color.RESET}
        """)

        return 0

    except KeyboardInterrupt:
        log_error("Build interrupted by user")
        return 1
    except ToolchainError as e:
        log_error(str(e))
        return 1
    except Exception as e:
        log_error(f"Unexpected error: {e}")
        import traceback
        traceback.print_exc()
        return 1

if __name__ == "__main__":
    sys.exit(main())
