"""Keeps the fixed replica port available.

The replica always binds the same well-known port. When something else holds
it, the owning process is terminated, even when it is unrelated to dfx.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import signal
import socket
import subprocess
import time
from collections.abc import Callable

from canister_deploy.constants import DEFAULT_REPLICA_HOST, PORT_FREE_RETRIES, PORT_SETTLE_DELAY_SECONDS
from canister_deploy.errors import PortBusy

logger = logging.getLogger(__name__)


def find_listener_pids(port: int) -> list[int]:
    """PIDs listening on a TCP port, via lsof. Empty if none are found or lsof is missing."""
    if not shutil.which("lsof"):
        logger.warning("lsof not found; cannot identify the process holding the port")
        return []
    out = subprocess.run(
        ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
        capture_output=True,
        text=True,
        check=False,
    )
    pids: list[int] = []
    for line in (out.stdout or "").splitlines():
        line = line.strip()
        if line.isdigit() and int(line) not in pids:
            pids.append(int(line))
    return pids


def terminate_pid(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.debug(f"Process {pid} already exited")


class PortManager:
    def __init__(
        self,
        host: str = DEFAULT_REPLICA_HOST,
        *,
        settle_delay_s: float = PORT_SETTLE_DELAY_SECONDS,
        retries: int = PORT_FREE_RETRIES,
        find_pids: Callable[[int], list[int]] = find_listener_pids,
        terminate: Callable[[int], None] = terminate_pid,
    ) -> None:
        self.host = host
        self.settle_delay_s = settle_delay_s
        self.retries = max(0, retries)
        self._find_pids = find_pids
        self._terminate = terminate

    def probe(self, port: int) -> OSError | None:
        """Try to bind a listener. Returns the bind error, or None if the port is free."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                s.bind((self.host, port))
            except OSError as e:
                return e
        return None

    def is_free(self, port: int) -> bool:
        return self.probe(port) is None

    def ensure_port_free(self, port: int) -> None:
        """
        Make sure `port` can be bound, terminating whoever holds it.

        A free port is a no-op. Otherwise each cycle terminates the listeners,
        waits `settle_delay_s` and re-probes, for at most `retries + 1` cycles.

        Raises:
            PortBusy: If the owner cannot be found or the port stays busy.
        """
        err = self.probe(port)
        if err is None:
            return
        if err.errno != errno.EADDRINUSE:
            raise PortBusy(port, f"cannot bind {self.host}:{port}: {err}")

        last_pids: list[int] = []
        cycles = self.retries + 1
        for cycle in range(cycles):
            pids = [p for p in self._find_pids(port) if p != os.getpid()]
            if not pids:
                raise PortBusy(port, "address in use but no owning process found", last_pids)
            last_pids = pids
            logger.warning(f"Port {port} held by pid(s) {pids}; terminating (cycle {cycle + 1}/{cycles})")
            for pid in pids:
                self._terminate(pid)
            time.sleep(self.settle_delay_s)
            if self.is_free(port):
                logger.info(f"Port {port} is free")
                return

        raise PortBusy(port, f"still in use after {cycles} terminate attempt(s)", last_pids)
