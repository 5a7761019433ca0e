"""Deploy generated Motoko canisters to a local dfx replica, repairing them when they fail to compile."""

from canister_deploy.errors import (
    DeployError,
    DeployInvocationFailure,
    PortBusy,
    RecoveryExhausted,
    ReplicaStartFailure,
    ToolchainAbsent,
)
from canister_deploy.models import DeploymentOutcome, DeploymentRequest
from canister_deploy.orchestrator import DeployConfig, DeploymentOrchestrator

__all__ = [
    "DeployConfig",
    "DeployError",
    "DeployInvocationFailure",
    "DeploymentOrchestrator",
    "DeploymentOutcome",
    "DeploymentRequest",
    "PortBusy",
    "RecoveryExhausted",
    "ReplicaStartFailure",
    "ToolchainAbsent",
]

__version__ = "0.1.0"
