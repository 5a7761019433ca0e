"""
Top-level deployment state machine.

    INIT -> STAGE -> ENSURE_REPLICA -> VALIDATE -> [RECOVER] -> RESOLVE
         -> {INSTALL | UPGRADE} -> RESOLVE_ID -> DONE

FAILED is reachable from every step. Each transition is logged and, when a
`JsonlLogger` is attached, appended to its events stream.

There is no locking. The dfx project state on disk and the fixed replica port
are single-writer: callers must serialize deployments per project root (for
example with a mutex keyed on the resolved root path). Concurrent runs against
one root are unsupported. A deployment cannot be cancelled once STAGE begins.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum

from canister_deploy.codegen import CodeGenService
from canister_deploy.constants import (
    DEFAULT_REPLICA_HOST,
    DEFAULT_REPLICA_PORT,
    REPLICA_POLL_ATTEMPTS,
    REPLICA_POLL_INTERVAL_SECONDS,
)
from canister_deploy.errors import DeployError, DeployInvocationFailure
from canister_deploy.logging import JsonlLogger
from canister_deploy.materializer import ProjectMaterializer
from canister_deploy.models import (
    DeployAction,
    DeploymentOutcome,
    DeploymentRequest,
    ModuleRecord,
    RecoveryReport,
    StagedProject,
)
from canister_deploy.ports import PortManager
from canister_deploy.recovery import RecoveryPipeline
from canister_deploy.registry import ModuleRegistry
from canister_deploy.replica import ReplicaLifecycle
from canister_deploy.toolchain import Toolchain, ensure_toolchain
from canister_deploy.validator import ArtifactValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployConfig:
    host: str = DEFAULT_REPLICA_HOST
    port: int = DEFAULT_REPLICA_PORT
    poll_interval_s: float = REPLICA_POLL_INTERVAL_SECONDS
    poll_attempts: int = REPLICA_POLL_ATTEMPTS
    teardown_at_exit: bool = True


class OrchestratorState(str, Enum):
    INIT = "init"
    STAGE = "stage"
    ENSURE_REPLICA = "ensure_replica"
    VALIDATE = "validate"
    RECOVER = "recover"
    RESOLVE = "resolve"
    INSTALL = "install"
    UPGRADE = "upgrade"
    RESOLVE_ID = "resolve_id"
    DONE = "done"
    FAILED = "failed"


class DeploymentOrchestrator:
    def __init__(
        self,
        toolchain: Toolchain,
        *,
        config: DeployConfig | None = None,
        codegen: CodeGenService | None = None,
        events: JsonlLogger | None = None,
        port_manager: PortManager | None = None,
        lifecycle: ReplicaLifecycle | None = None,
    ) -> None:
        self.toolchain = toolchain
        self.config = config or DeployConfig()
        self.events = events
        self.materializer = ProjectMaterializer(host=self.config.host, port=self.config.port)
        self.lifecycle = lifecycle or ReplicaLifecycle(
            toolchain,
            port_manager or PortManager(self.config.host),
            host=self.config.host,
            poll_interval_s=self.config.poll_interval_s,
            poll_attempts=self.config.poll_attempts,
            teardown_at_exit=self.config.teardown_at_exit,
        )
        self.validator = ArtifactValidator(toolchain)
        self.recovery = RecoveryPipeline(self.validator, self.materializer, toolchain, codegen, events=events)
        self.registry = ModuleRegistry(toolchain)
        self.state = OrchestratorState.INIT

    def _transition(self, state: OrchestratorState, **fields: object) -> None:
        self.state = state
        logger.debug(f"Deployment state -> {state.value}")
        if self.events is not None:
            self.events.event("state", state=state.value, **fields)

    def deploy(self, request: DeploymentRequest) -> DeploymentOutcome:
        """
        Deploy one canister and return its id.

        Raises:
            ToolchainAbsent: dfx is missing or broken.
            PortBusy: The replica port could not be freed.
            ReplicaStartFailure: The replica never became reachable.
            DeployInvocationFailure: dfx deploy/build/install failed, or no id was issued.
            OSError: Staging or recovery could not write files.
        """
        started = time.monotonic()
        self._transition(OrchestratorState.INIT, module_name=request.module_name)
        try:
            outcome = self._run(request)
        except (DeployError, OSError) as e:
            fields = e.to_dict() if isinstance(e, DeployError) else {"kind": "filesystem_error", "message": str(e)}
            logger.error(f"Deployment of {request.module_name} failed in {self.state.value}: {e}")
            failed_in = self.state.value
            self._transition(OrchestratorState.FAILED, failed_in=failed_in, kind=fields["kind"])
            self._record(
                {
                    "module_name": request.module_name,
                    "ok": False,
                    "failed_in": failed_in,
                    "error": fields,
                    "elapsed_s": round(time.monotonic() - started, 3),
                }
            )
            raise

        self._transition(OrchestratorState.DONE, module_id=outcome.module_id)
        self._record({"ok": True, "elapsed_s": round(time.monotonic() - started, 3), **outcome.to_dict()})
        logger.info(f"Deployed {outcome.module_name} as {outcome.module_id} ({outcome.action.value})")
        return outcome

    def _record(self, row: dict) -> None:
        if self.events is not None:
            self.events.deployment_row(row)

    def _run(self, request: DeploymentRequest) -> DeploymentOutcome:
        ensure_toolchain(self.toolchain)

        self._transition(OrchestratorState.STAGE)
        staged = self.materializer.stage(request)

        self._transition(OrchestratorState.ENSURE_REPLICA, port=self.config.port)
        self.lifecycle.ensure_running(request.project_root, self.config.port)

        self._transition(OrchestratorState.VALIDATE)
        result = self.validator.check(staged)

        report: RecoveryReport | None = None
        if not result.passed:
            self._transition(OrchestratorState.RECOVER)
            staged, report = self.recovery.recover(staged, result.raw_error)

        self._transition(OrchestratorState.RESOLVE)
        record = self.registry.resolve(staged.module_name, staged.project_root)

        if record.existing_id is None:
            self._transition(OrchestratorState.INSTALL)
            self._install(staged)
            self._transition(OrchestratorState.RESOLVE_ID)
            module_id = self._resolve_new_id(staged)
            action = DeployAction.INSTALL
        else:
            self._transition(OrchestratorState.UPGRADE, module_id=record.existing_id)
            self._upgrade(staged)
            self._transition(OrchestratorState.RESOLVE_ID)
            module_id = record.existing_id
            action = DeployAction.UPGRADE

        return DeploymentOutcome(module_id=module_id, module_name=staged.module_name, action=action, recovery=report)

    def _install(self, staged: StagedProject) -> None:
        res = self.toolchain.deploy(staged.module_name, staged.workspace)
        if not res.ok:
            raise DeployInvocationFailure(
                f"dfx deploy {staged.module_name} failed with exit code {res.returncode}",
                stage=OrchestratorState.INSTALL.value,
                output=res.output,
            )

    def _upgrade(self, staged: StagedProject) -> None:
        for step in (self.toolchain.build, self.toolchain.install_upgrade):
            res = step(staged.module_name, staged.workspace)
            if not res.ok:
                raise DeployInvocationFailure(
                    f"{' '.join(res.args[1:])} failed with exit code {res.returncode}",
                    stage=OrchestratorState.UPGRADE.value,
                    output=res.output,
                )

    def _resolve_new_id(self, staged: StagedProject) -> str:
        record: ModuleRecord = self.registry.resolve(staged.module_name, staged.project_root)
        if record.existing_id is None:
            raise DeployInvocationFailure(
                f"dfx deploy succeeded but no canister id was issued for {staged.module_name}",
                stage=OrchestratorState.RESOLVE_ID.value,
            )
        return record.existing_id
