"""Data model shared by the deployment components."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path

# dfx canister names double as Motoko identifiers and directory names.
_MODULE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def validate_module_name(name: str) -> str:
    if not isinstance(name, str) or not _MODULE_NAME_RE.match(name):
        raise ValueError(f"invalid module name {name!r} (expected letters, digits and '_', starting with a letter)")
    return name


@dataclass(frozen=True)
class DeploymentRequest:
    """One deployment invocation. Owned by a single orchestration run."""

    module_name: str
    source_artifact: str
    project_root: Path

    def __post_init__(self) -> None:
        validate_module_name(self.module_name)
        if not isinstance(self.source_artifact, str):
            raise TypeError("source_artifact must be text")
        object.__setattr__(self, "project_root", Path(self.project_root))


class ReplicaState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    UNREACHABLE = "unreachable"


@dataclass
class ReplicaEndpoint:
    """Local replica address and state. Mutated only by ReplicaLifecycle."""

    host: str
    port: int
    state: ReplicaState = ReplicaState.STOPPED

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class StagedProject:
    project_root: Path
    workspace: Path
    module_name: str
    module_source_path: Path
    config_path: Path


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    raw_error: str | None = None


class RecoveryTier(IntEnum):
    """Repair strategies, numbered by increasing aggressiveness.

    Numbering is identity, not execution order: EXTERNAL_REWRITE runs before
    MINIMAL_FALLBACK_ARTIFACT, which always ends a plan.
    """

    IMPORT_REPAIR = 1
    TOOLCHAIN_ENVIRONMENT_FIX = 2
    ARTIFACT_SIMPLIFICATION = 3
    MINIMAL_FALLBACK_ARTIFACT = 4
    EXTERNAL_REWRITE = 5


@dataclass
class RecoveryReport:
    tiers_attempted: list[RecoveryTier] = field(default_factory=list)
    succeeded_tier: RecoveryTier | None = None

    @property
    def degraded(self) -> bool:
        return self.succeeded_tier is RecoveryTier.MINIMAL_FALLBACK_ARTIFACT

    def to_dict(self) -> dict[str, object]:
        return {
            "tiers_attempted": [t.name.lower() for t in self.tiers_attempted],
            "succeeded_tier": self.succeeded_tier.name.lower() if self.succeeded_tier else None,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class ModuleRecord:
    module_name: str
    existing_id: str | None = None


class DeployAction(str, Enum):
    INSTALL = "install"
    UPGRADE = "upgrade"


@dataclass(frozen=True)
class DeploymentOutcome:
    module_id: str
    module_name: str
    action: DeployAction
    recovery: RecoveryReport | None = None

    @property
    def degraded(self) -> bool:
        return self.recovery is not None and self.recovery.degraded

    def to_dict(self) -> dict[str, object]:
        return {
            "module_id": self.module_id,
            "module_name": self.module_name,
            "action": self.action.value,
            "degraded": self.degraded,
            "recovery": self.recovery.to_dict() if self.recovery else None,
        }
