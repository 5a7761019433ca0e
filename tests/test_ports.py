from __future__ import annotations

import errno
import socket

import pytest
from conftest import skip_if_no_lsof

from canister_deploy.errors import PortBusy
from canister_deploy.ports import PortManager, find_listener_pids


def _listen(port: int) -> socket.socket:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind(("127.0.0.1", port))
    s.listen(1)
    return s


def test_free_port_is_a_noop(free_port: int) -> None:
    terminated: list[int] = []
    looked_up: list[int] = []

    pm = PortManager(
        "127.0.0.1",
        settle_delay_s=0,
        find_pids=lambda port: looked_up.append(port) or [4242],
        terminate=terminated.append,
    )
    pm.ensure_port_free(free_port)

    assert terminated == []
    assert looked_up == []


def test_busy_port_owner_is_terminated_and_port_reprobed(free_port: int) -> None:
    holder = _listen(free_port)
    terminated: list[int] = []

    def terminate(pid: int) -> None:
        terminated.append(pid)
        holder.close()

    pm = PortManager("127.0.0.1", settle_delay_s=0, find_pids=lambda port: [424242], terminate=terminate)
    try:
        pm.ensure_port_free(free_port)
    finally:
        holder.close()

    assert terminated == [424242]
    assert pm.is_free(free_port)


def test_busy_port_without_owner_raises(free_port: int) -> None:
    holder = _listen(free_port)
    try:
        pm = PortManager("127.0.0.1", settle_delay_s=0, find_pids=lambda port: [], terminate=lambda pid: None)
        with pytest.raises(PortBusy) as ei:
            pm.ensure_port_free(free_port)
    finally:
        holder.close()

    assert ei.value.port == free_port
    assert ei.value.stage == "ensure_replica"
    assert "no owning process" in ei.value.message


def test_own_pid_is_never_terminated(free_port: int) -> None:
    import os

    holder = _listen(free_port)
    terminated: list[int] = []
    try:
        pm = PortManager(
            "127.0.0.1", settle_delay_s=0, find_pids=lambda port: [os.getpid()], terminate=terminated.append
        )
        with pytest.raises(PortBusy):
            pm.ensure_port_free(free_port)
    finally:
        holder.close()
    assert terminated == []


def test_retries_are_bounded(free_port: int) -> None:
    holder = _listen(free_port)
    terminated: list[int] = []
    try:
        pm = PortManager(
            "127.0.0.1", settle_delay_s=0, retries=1, find_pids=lambda port: [424242], terminate=terminated.append
        )
        with pytest.raises(PortBusy) as ei:
            pm.ensure_port_free(free_port)
    finally:
        holder.close()

    # One initial cycle plus one retry.
    assert terminated == [424242, 424242]
    assert ei.value.pids == [424242]
    assert ei.value.to_dict()["data"]["pids"] == [424242]


def test_non_address_in_use_error_is_not_self_healed(monkeypatch: pytest.MonkeyPatch) -> None:
    pm = PortManager("127.0.0.1", settle_delay_s=0, find_pids=lambda port: [1], terminate=lambda pid: None)
    monkeypatch.setattr(pm, "probe", lambda port: OSError(errno.EACCES, "Permission denied"))

    with pytest.raises(PortBusy) as ei:
        pm.ensure_port_free(80)
    assert "Permission denied" in ei.value.message


def test_find_listener_pids_without_lsof(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("canister_deploy.ports.shutil.which", lambda name: None)
    assert find_listener_pids(8000) == []


@skip_if_no_lsof
def test_find_listener_pids_sees_own_listener(free_port: int) -> None:
    import os

    holder = _listen(free_port)
    try:
        pids = find_listener_pids(free_port)
    finally:
        holder.close()
    assert os.getpid() in pids
