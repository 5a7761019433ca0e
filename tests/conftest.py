"""
Shared pytest fixtures and utilities for canister-deploy tests.

This module provides:
- A scriptable in-memory stand-in for the dfx toolchain
- Dynamic port allocation
- A plain HTTP server that squats on a port without being a replica
- Skip markers for host tools
"""

from __future__ import annotations

import shutil
import socket
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from canister_deploy.toolchain import CommandResult, SupportPaths

# ---------------------------------------------------------------------------
# Port Management
# ---------------------------------------------------------------------------


def find_free_port(start: int = 10000, end: int = 20000) -> int:
    """Find an available port in the given range by binding to it."""
    for port in range(start, end):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                s.bind(("127.0.0.1", port))
                return port
        except OSError:
            continue
    raise RuntimeError(f"No free port found in range {start}-{end}")


# ---------------------------------------------------------------------------
# Fake toolchain
# ---------------------------------------------------------------------------

DEFAULT_DIAGNOSTIC = "main.mo:3.5-3.12: type error [M0057], unbound variable frobnicate"
MISSING_BASE_DIAGNOSTIC = 'main.mo:1.1-1.30: import error [M0010], package "base" not defined'


class FakeProcess:
    """Minimal `subprocess.Popen` stand-in for `dfx start`."""

    def __init__(self, returncode: int | None = None) -> None:
        self.returncode = returncode
        self.terminated = False

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode


class FakeToolchain:
    """
    Records every call and answers like dfx would.

    - `compiles(source)` decides whether `moc --check` passes.
    - `diagnostic(source)` is the compiler output on failure.
    - Canister ids live in `ids`; `deploy` issues one for unknown names.
    """

    def __init__(
        self,
        *,
        compiles: Callable[[str], bool] | None = None,
        diagnostic: Callable[[str], str] | None = None,
        support_available: bool = True,
        cache_install_fixes_support: bool = True,
        version_ok: bool = True,
        upgrade_ok: bool = True,
        deploy_ok: bool = True,
        issue_ids: bool = True,
    ) -> None:
        self.compiles = compiles or (lambda src: True)
        self.diagnostic = diagnostic or (lambda src: DEFAULT_DIAGNOSTIC)
        self.support_available = support_available
        self.cache_install_fixes_support = cache_install_fixes_support
        self.version_ok = version_ok
        self.upgrade_ok = upgrade_ok
        self.deploy_ok = deploy_ok
        self.issue_ids = issue_ids
        self.ids: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.checked_sources: list[str] = []
        self.process = FakeProcess()
        self.on_start: Callable[[], None] | None = None
        self.binary = Path("/fake/bin/dfx")

    def _res(self, args: list[str], rc: int = 0, out: str = "", err: str = "") -> CommandResult:
        return CommandResult(args=[str(self.binary), *args], returncode=rc, stdout=out, stderr=err)

    def command_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def count(self, name: str) -> int:
        return self.command_names().count(name)

    def version(self) -> CommandResult:
        self.calls.append(("version",))
        if not self.version_ok:
            return self._res(["--version"], rc=127, err="dfx: broken install")
        return self._res(["--version"], out="dfx 0.24.3\n")

    def cache_show(self) -> CommandResult:
        return self._res(["cache", "show"], out="/fake/cache/0.24.3\n")

    def cache_install(self) -> CommandResult:
        self.calls.append(("cache_install",))
        if self.cache_install_fixes_support:
            self.support_available = True
        return self._res(["cache", "install"], out="Installed dfx 0.24.3 to cache.\n")

    def upgrade(self) -> CommandResult:
        self.calls.append(("upgrade",))
        if not self.upgrade_ok:
            return self._res(["upgrade"], rc=1, err="Failed to fetch latest version")
        return self._res(["upgrade"], out="Already up to date\n")

    def support_paths(self) -> SupportPaths | None:
        if not self.support_available:
            return None
        return SupportPaths(moc=Path("/fake/cache/0.24.3/moc"), base=Path("/fake/cache/0.24.3/base"))

    def moc_check(self, support: SupportPaths, source: Path) -> CommandResult:
        text = source.read_text(encoding="utf-8")
        self.calls.append(("moc_check",))
        self.checked_sources.append(text)
        args = [str(support.moc), "--check", str(source)]
        if self.compiles(text):
            return CommandResult(args=args, returncode=0, stdout="", stderr="")
        return CommandResult(args=args, returncode=1, stdout="", stderr=self.diagnostic(text))

    def stop(self, cwd: Path, *, timeout_s: float | None = None) -> CommandResult:
        self.calls.append(("stop", Path(cwd)))
        return self._res(["stop"], rc=255, err="Error: No local network replica found. Nothing to do.")

    def start(self, cwd: Path, *, host: str, port: int, log_path: Path) -> FakeProcess:
        self.calls.append(("start", host, port))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("Dashboard: http://localhost:4943\nReplica API running\n", encoding="utf-8")
        if self.on_start is not None:
            self.on_start()
        return self.process

    def canister_id(self, name: str, cwd: Path) -> CommandResult:
        self.calls.append(("canister_id", name))
        if name in self.ids:
            return self._res(["canister", "id", name], out=f"{self.ids[name]}\n")
        return self._res(["canister", "id", name], rc=255, err=f"Error: Cannot find canister id. Please issue 'dfx canister create {name}'.")

    def deploy(self, name: str, cwd: Path) -> CommandResult:
        self.calls.append(("deploy", name))
        if not self.deploy_ok:
            return self._res(["deploy", name], rc=1, err="Error: Failed while trying to deploy canisters.")
        if self.issue_ids and name not in self.ids:
            self.ids[name] = f"bkyz2-fmaaa-aaaaa-qaa{len(self.ids)}q-cai"
        return self._res(["deploy", name], out="Deployed canisters.\n")

    def build(self, name: str, cwd: Path) -> CommandResult:
        self.calls.append(("build", name))
        return self._res(["build", name])

    def install_upgrade(self, name: str, cwd: Path) -> CommandResult:
        self.calls.append(("install_upgrade", name))
        return self._res(["canister", "install", name, "--mode", "upgrade"])


class FakeCodeGen:
    def __init__(self, replies: list[str] | None = None, error: Exception | None = None) -> None:
        self.replies = list(replies or [])
        self.error = error
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.replies.pop(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def free_port() -> int:
    """Fixture providing a dynamically allocated free port."""
    return find_free_port()


@pytest.fixture
def fake_toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture(autouse=True)
def _isolated_replica_registry(monkeypatch: pytest.MonkeyPatch) -> None:
    """Replica endpoints are process-wide; give every test a clean table."""
    from canister_deploy import replica

    monkeypatch.setattr(replica, "_ENDPOINTS", {})
    monkeypatch.setattr(replica, "_PROCESSES", {})
    monkeypatch.setattr(replica, "_EXIT_TEARDOWN", set())


# ---------------------------------------------------------------------------
# Unrelated HTTP server
# ---------------------------------------------------------------------------


class _NotFoundHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        self.send_error(404, "Not Found")

    def log_message(self, format: str, *args: object) -> None:
        pass


class SquattingHTTPServer:
    """A dev-server stand-in holding a port and answering 404 to everything."""

    def __init__(self, port: int, host: str = "127.0.0.1") -> None:
        self.port = port
        self._server = ThreadingHTTPServer((host, port), _NotFoundHandler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)
        self.closed = True


@pytest.fixture
def squatter(free_port: int):
    server = SquattingHTTPServer(free_port)
    yield server
    server.close()


# ---------------------------------------------------------------------------
# Skip Conditions
# ---------------------------------------------------------------------------

skip_if_no_lsof = pytest.mark.skipif(shutil.which("lsof") is None, reason="lsof not available")
