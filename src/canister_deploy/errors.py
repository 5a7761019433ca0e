"""Deployment error type definitions.

Every fatal condition of a deployment surfaces as a ``DeployError`` subclass
carrying the stage that failed and the captured toolchain output, so callers
can report which step broke and why. Filesystem errors are not wrapped: they
propagate as plain ``OSError``.
"""

from __future__ import annotations

from typing import Any


class DeployError(Exception):
    """Base class for deployment failures."""

    kind = "deploy_error"

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        output: str = "",
        data: dict[str, Any] | None = None,
    ):
        self.message = message
        self.stage = stage
        self.output = output
        self.data = data or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a JSON-serializable failure report."""
        return {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
            "output": self.output,
            "data": self.data,
        }


class ToolchainAbsent(DeployError):
    """The dfx toolchain is missing or does not answer `dfx --version`."""

    kind = "toolchain_absent"

    def __init__(self, message: str, *, hint: str, output: str = ""):
        super().__init__(message, stage="init", output=output, data={"hint": hint})
        self.hint = hint


class PortBusy(DeployError):
    """The replica port stayed occupied after the bounded kill-and-reprobe cycle."""

    kind = "port_busy"

    def __init__(self, port: int, reason: str, pids: list[int] | None = None):
        super().__init__(
            f"Port {port} is busy: {reason}",
            stage="ensure_replica",
            data={"port": port, "pids": list(pids or [])},
        )
        self.port = port
        self.pids = list(pids or [])


class ReplicaStartFailure(DeployError):
    """The local replica did not answer the liveness probe in time."""

    kind = "replica_start_failure"

    def __init__(self, message: str, *, output: str = ""):
        super().__init__(message, stage="ensure_replica", output=output)


class RecoveryExhausted(DeployError):
    """A recovery plan ran out of tiers.

    Unreachable while every plan ends with the minimal fallback artifact; it
    guards that invariant.
    """

    kind = "recovery_exhausted"

    def __init__(self, message: str):
        super().__init__(message, stage="recover")


class DeployInvocationFailure(DeployError):
    """`dfx deploy`, `dfx build` or `dfx canister install` failed."""

    kind = "deploy_invocation_failure"

    def __init__(self, message: str, *, stage: str, output: str = ""):
        super().__init__(message, stage=stage, output=output)
