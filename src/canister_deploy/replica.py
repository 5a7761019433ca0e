"""
Local replica lifecycle: start, stop and health-check `dfx start`.

A replica that already answers the liveness probe is reused as-is. Anything
else is stopped and restarted with `--clean`.

Endpoints are process-wide: one `ReplicaEndpoint` per project root, shared by
every `ReplicaLifecycle` instance. Replicas spawned by this process are
terminated at interpreter exit unless `teardown_at_exit=False`.
"""

from __future__ import annotations

import atexit
import logging
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

import httpx

from canister_deploy.constants import (
    DEFAULT_REPLICA_HOST,
    LIVENESS_PROBE_TIMEOUT_SECONDS,
    REPLICA_LOG_FILENAME,
    REPLICA_POLL_ATTEMPTS,
    REPLICA_POLL_INTERVAL_SECONDS,
    REPLICA_STATUS_CONTENT_TYPE,
    REPLICA_STOP_TIMEOUT_SECONDS,
    WORKSPACE_DIRNAME,
)
from canister_deploy.errors import ReplicaStartFailure
from canister_deploy.models import ReplicaEndpoint, ReplicaState
from canister_deploy.ports import PortManager
from canister_deploy.toolchain import Toolchain
from canister_deploy.utils import tail_text

logger = logging.getLogger(__name__)

_ENDPOINTS: dict[Path, ReplicaEndpoint] = {}
_PROCESSES: dict[Path, subprocess.Popen] = {}
_EXIT_TEARDOWN: set[Path] = set()


def http_liveness_probe(endpoint: ReplicaEndpoint) -> bool:
    """
    True only for a replica status reply: 200 with a CBOR body.

    Any other HTTP server on the port (a dev server answering 404, a proxy
    answering 503) is not a replica and gets replaced.
    """
    try:
        with httpx.Client(timeout=LIVENESS_PROBE_TIMEOUT_SECONDS) as client:
            r = client.get(f"{endpoint.url}/api/v2/status")
    except (httpx.HTTPError, OSError):
        return False
    content_type = r.headers.get("content-type", "").split(";")[0].strip().lower()
    if r.status_code != 200 or content_type != REPLICA_STATUS_CONTENT_TYPE:
        logger.debug(f"{endpoint.url} answered {r.status_code} ({content_type or 'no content-type'}); not a replica")
        return False
    return True


def _terminate_process(proc: subprocess.Popen, *, timeout_s: float = 10.0) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        try:
            proc.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
    except ProcessLookupError:
        pass


def _teardown_at_exit() -> None:
    for root in list(_EXIT_TEARDOWN):
        proc = _PROCESSES.pop(root, None)
        if proc is None:
            continue
        logger.info(f"Stopping replica for {root}")
        try:
            _terminate_process(proc)
        except OSError as e:
            logger.debug(f"Replica teardown for {root} failed: {e}")
        endpoint = _ENDPOINTS.get(root)
        if endpoint is not None:
            endpoint.state = ReplicaState.STOPPED
    _EXIT_TEARDOWN.clear()


atexit.register(_teardown_at_exit)


def _read_log(path: Path) -> str:
    try:
        return tail_text(path.read_text(encoding="utf-8", errors="replace"))
    except OSError:
        return ""


class ReplicaLifecycle:
    def __init__(
        self,
        toolchain: Toolchain,
        port_manager: PortManager | None = None,
        *,
        host: str = DEFAULT_REPLICA_HOST,
        poll_interval_s: float = REPLICA_POLL_INTERVAL_SECONDS,
        poll_attempts: int = REPLICA_POLL_ATTEMPTS,
        probe: Callable[[ReplicaEndpoint], bool] = http_liveness_probe,
        teardown_at_exit: bool = True,
    ) -> None:
        self.toolchain = toolchain
        self.port_manager = port_manager or PortManager(host)
        self.host = host
        self.poll_interval_s = poll_interval_s
        self.poll_attempts = max(1, poll_attempts)
        self._probe = probe
        self.teardown_at_exit = teardown_at_exit

    @staticmethod
    def _key(project_root: Path) -> Path:
        return Path(project_root).resolve()

    def endpoint(self, project_root: Path, port: int) -> ReplicaEndpoint:
        """The shared endpoint for `project_root`, created STOPPED on first use."""
        key = self._key(project_root)
        ep = _ENDPOINTS.get(key)
        if ep is None or ep.port != port or ep.host != self.host:
            ep = ReplicaEndpoint(host=self.host, port=port)
            _ENDPOINTS[key] = ep
        return ep

    def ensure_running(self, project_root: Path, port: int) -> ReplicaEndpoint:
        """
        Return a RUNNING endpoint for `project_root`, starting a clean replica if needed.

        Raises:
            PortBusy: If the port cannot be freed for the new replica.
            ReplicaStartFailure: If the replica exits early or never answers within
                `poll_attempts * poll_interval_s`.
        """
        key = self._key(project_root)
        workspace = key / WORKSPACE_DIRNAME
        ep = self.endpoint(key, port)

        if self._probe(ep):
            logger.info(f"Replica already running at {ep.url}")
            ep.state = ReplicaState.RUNNING
            return ep

        workspace.mkdir(parents=True, exist_ok=True)
        self._stop_quietly(key, workspace)
        ep.state = ReplicaState.STOPPED
        self.port_manager.ensure_port_free(port)

        ep.state = ReplicaState.STARTING
        log_path = workspace / REPLICA_LOG_FILENAME
        proc = self.toolchain.start(workspace, host=ep.host, port=ep.port, log_path=log_path)
        _PROCESSES[key] = proc
        if self.teardown_at_exit:
            _EXIT_TEARDOWN.add(key)
        else:
            _EXIT_TEARDOWN.discard(key)

        for attempt in range(self.poll_attempts):
            if self._probe(ep):
                logger.info(f"Replica running at {ep.url} (attempt {attempt + 1}/{self.poll_attempts})")
                ep.state = ReplicaState.RUNNING
                return ep
            rc = proc.poll()
            if rc is not None:
                ep.state = ReplicaState.UNREACHABLE
                _PROCESSES.pop(key, None)
                raise ReplicaStartFailure(f"dfx start exited with code {rc}", output=_read_log(log_path))
            logger.debug(f"Replica not answering yet (attempt {attempt + 1}/{self.poll_attempts})")
            if attempt < self.poll_attempts - 1:
                time.sleep(self.poll_interval_s)

        ep.state = ReplicaState.UNREACHABLE
        _terminate_process(proc)
        _PROCESSES.pop(key, None)
        ceiling = self.poll_attempts * self.poll_interval_s
        raise ReplicaStartFailure(
            f"replica at {ep.url} did not answer within {ceiling:.0f}s",
            output=_read_log(log_path),
        )

    def stop(self, project_root: Path) -> None:
        """Stop the replica for `project_root`. Stopping an absent replica is a no-op."""
        key = self._key(project_root)
        self._stop_quietly(key, key / WORKSPACE_DIRNAME)
        ep = _ENDPOINTS.get(key)
        if ep is not None:
            ep.state = ReplicaState.STOPPED

    def _stop_quietly(self, key: Path, workspace: Path) -> None:
        proc = _PROCESSES.pop(key, None)
        if proc is not None:
            _terminate_process(proc)
        _EXIT_TEARDOWN.discard(key)
        if not workspace.is_dir():
            return
        try:
            res = self.toolchain.stop(workspace, timeout_s=REPLICA_STOP_TIMEOUT_SECONDS)
        except TimeoutError as e:
            logger.warning(f"dfx stop did not finish: {e}")
            return
        if not res.ok:
            logger.debug(f"No prior replica to stop: {res.output}")
