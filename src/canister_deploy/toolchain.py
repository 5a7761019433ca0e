"""Thin wrapper around the dfx command-line toolchain.

The dfx binary is resolved once and every invocation receives its absolute
path. Nothing here edits ``PATH`` or sources shell environment scripts.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from canister_deploy.constants import (
    BASE_PACKAGE,
    DFX_INSTALL_HINT,
    TOOLCHAIN_CHECK_BASE_DELAY,
    TOOLCHAIN_CHECK_MAX_ATTEMPTS,
    TOOLCHAIN_VERSION_TIMEOUT_SECONDS,
)
from canister_deploy.errors import ToolchainAbsent
from canister_deploy.utils import (
    BinaryNotExecutableError,
    BinaryNotFoundError,
    retry_with_backoff,
    validate_binary,
)

logger = logging.getLogger(__name__)

__all__ = [
    "CommandResult",
    "SupportPaths",
    "Toolchain",
    "ToolchainStatus",
    "candidate_dfx_paths",
    "ensure_toolchain",
    "resolve_dfx_binary",
    "toolchain_status",
]


@dataclass(frozen=True)
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stderr and stdout joined, the way a user would see them in a terminal."""
        parts = [p.strip() for p in (self.stderr, self.stdout) if p and p.strip()]
        return "\n".join(parts)


@dataclass(frozen=True)
class SupportPaths:
    """Compiler and base library shipped in the dfx cache."""

    moc: Path
    base: Path


def candidate_dfx_paths(home: Path | None = None) -> list[Path]:
    """Well-known dfx install locations, in lookup order."""
    home = home or Path.home()
    paths = [
        home / ".local" / "share" / "dfx" / "bin" / "dfx",
        home / ".local" / "bin" / "dfx",
        home / ".dfinity" / "bin" / "dfx",
        home / "bin" / "dfx",
    ]
    if os.name == "nt":
        paths = [p.with_suffix(".exe") for p in paths]
        paths.append(home / "AppData" / "Local" / "dfinity" / "bin" / "dfx.exe")
    return paths


def resolve_dfx_binary(explicit: Path | None = None) -> Path:
    """
    Locate the dfx binary.

    Checks (in order):
    1. `explicit` argument
    2. `CDEPLOY_DFX_BIN` environment variable
    3. `dfx` on PATH
    4. Well-known install locations (see `candidate_dfx_paths`)

    Raises:
        ToolchainAbsent: If no usable binary is found.
    """
    if explicit is None:
        env_bin = os.environ.get("CDEPLOY_DFX_BIN")
        if env_bin:
            explicit = Path(env_bin)

    candidates: list[Path] = []
    if explicit is not None:
        candidates.append(explicit)
    else:
        on_path = shutil.which("dfx")
        if on_path:
            candidates.append(Path(on_path))
        candidates.extend(candidate_dfx_paths())

    for candidate in candidates:
        try:
            resolved = validate_binary(candidate, binary_name="dfx binary")
        except (BinaryNotFoundError, BinaryNotExecutableError) as e:
            logger.debug(f"Skipping dfx candidate: {e}")
            continue
        logger.debug(f"Resolved dfx binary: {resolved}")
        return resolved.resolve()

    where = str(explicit) if explicit is not None else "PATH or the default install locations"
    raise ToolchainAbsent(f"dfx not found in {where}", hint=DFX_INSTALL_HINT)


class Toolchain:
    """
    Runs dfx subcommands.

    Non-zero exit codes are returned, not raised: the caller decides what a
    failure means. Only a missing binary (`ToolchainAbsent`) and a timeout
    (`TimeoutError`) raise.
    """

    def __init__(self, binary: Path) -> None:
        self.binary = Path(binary)

    def _exec(self, argv: list[str], *, cwd: Path | None = None, timeout_s: float | None = None) -> CommandResult:
        logger.debug(f"Running: {' '.join(argv)} (cwd={cwd})")
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TimeoutError(f"{' '.join(argv)} timed out after {timeout_s}s") from e
        except (FileNotFoundError, PermissionError) as e:
            raise ToolchainAbsent(f"cannot execute {argv[0]}: {e}", hint=DFX_INSTALL_HINT) from e
        return CommandResult(args=argv, returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")

    def run(self, *args: str, cwd: Path | None = None, timeout_s: float | None = None) -> CommandResult:
        return self._exec([str(self.binary), *args], cwd=cwd, timeout_s=timeout_s)

    def version(self) -> CommandResult:
        return self.run("--version", timeout_s=TOOLCHAIN_VERSION_TIMEOUT_SECONDS)

    def cache_show(self) -> CommandResult:
        return self.run("cache", "show")

    def cache_install(self) -> CommandResult:
        return self.run("cache", "install")

    def upgrade(self) -> CommandResult:
        return self.run("upgrade")

    def support_paths(self) -> SupportPaths | None:
        """Locate moc and the base library in the dfx cache, or None if the cache is incomplete."""
        res = self.cache_show()
        if not res.ok or not res.stdout.strip():
            logger.debug(f"dfx cache show failed: {res.output}")
            return None
        cache_dir = Path(res.stdout.strip().splitlines()[-1].strip())
        moc = cache_dir / ("moc.exe" if os.name == "nt" else "moc")
        base = cache_dir / BASE_PACKAGE
        if not moc.is_file() or not base.is_dir():
            logger.debug(f"dfx cache at {cache_dir} is missing moc or the base library")
            return None
        return SupportPaths(moc=moc, base=base)

    def moc_check(self, support: SupportPaths, source: Path) -> CommandResult:
        """Type-check a single Motoko file without producing a wasm module."""
        return self._exec(
            [str(support.moc), "--package", BASE_PACKAGE, str(support.base), "--check", str(source)],
            cwd=source.parent,
        )

    def stop(self, cwd: Path, *, timeout_s: float | None = None) -> CommandResult:
        return self.run("stop", cwd=cwd, timeout_s=timeout_s)

    def start(self, cwd: Path, *, host: str, port: int, log_path: Path) -> subprocess.Popen:
        """
        Spawn `dfx start --clean` in the foreground of a child process.

        Output goes to `log_path` so it can be attached to a start failure.
        """
        argv = [str(self.binary), "start", "--clean", "--host", f"{host}:{port}"]
        logger.info(f"Starting replica: {' '.join(argv)}")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("w", encoding="utf-8") as log:
            try:
                return subprocess.Popen(
                    argv,
                    cwd=str(cwd),
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                )
            except (FileNotFoundError, PermissionError) as e:
                raise ToolchainAbsent(f"cannot execute {argv[0]}: {e}", hint=DFX_INSTALL_HINT) from e

    def canister_id(self, name: str, cwd: Path) -> CommandResult:
        return self.run("canister", "id", name, cwd=cwd)

    def deploy(self, name: str, cwd: Path) -> CommandResult:
        return self.run("deploy", name, cwd=cwd)

    def build(self, name: str, cwd: Path) -> CommandResult:
        return self.run("build", name, cwd=cwd)

    def install_upgrade(self, name: str, cwd: Path) -> CommandResult:
        return self.run("canister", "install", name, "--mode", "upgrade", cwd=cwd)


def ensure_toolchain(toolchain: Toolchain) -> str:
    """
    Capability check: `dfx --version` must succeed.

    Returns:
        The reported version string.

    Raises:
        ToolchainAbsent: If dfx cannot be executed or reports an error.
    """

    def _probe() -> CommandResult:
        res = toolchain.version()
        if not res.ok:
            raise RuntimeError(res.output or f"exit {res.returncode}")
        return res

    try:
        res = retry_with_backoff(
            _probe,
            max_attempts=TOOLCHAIN_CHECK_MAX_ATTEMPTS,
            base_delay=TOOLCHAIN_CHECK_BASE_DELAY,
            retryable_exceptions=(RuntimeError, TimeoutError),
        )
    except (RuntimeError, TimeoutError) as e:
        raise ToolchainAbsent(f"dfx --version failed: {e}", hint=DFX_INSTALL_HINT, output=str(e)) from e
    version = res.stdout.strip()
    logger.info(f"Toolchain: {version}")
    return version


class ToolchainStatus(str, Enum):
    NOT_INSTALLED = "not_installed"
    MISSING_PACKAGES = "missing_packages"
    READY = "ready"


_PROBE_PROGRAM = 'import Nat "mo:base/Nat";\nactor {};\n'


def toolchain_status(toolchain: Toolchain) -> ToolchainStatus:
    """Classify the local toolchain by compiling a throwaway program that imports the base library."""
    try:
        if not toolchain.version().ok:
            return ToolchainStatus.NOT_INSTALLED
    except (ToolchainAbsent, TimeoutError):
        return ToolchainStatus.NOT_INSTALLED

    support = toolchain.support_paths()
    if support is None:
        return ToolchainStatus.MISSING_PACKAGES

    with tempfile.TemporaryDirectory(prefix="cdeploy-check-") as tmp:
        probe = Path(tmp) / "probe.mo"
        probe.write_text(_PROBE_PROGRAM, encoding="utf-8")
        res = toolchain.moc_check(support, probe)
    return ToolchainStatus.READY if res.ok else ToolchainStatus.MISSING_PACKAGES
