from __future__ import annotations

import logging
from pathlib import Path

from canister_deploy.constants import WORKSPACE_DIRNAME
from canister_deploy.models import ModuleRecord
from canister_deploy.toolchain import Toolchain

logger = logging.getLogger(__name__)


class ModuleRegistry:
    """Asks the replica which canisters it already knows. Never cached: every call queries dfx."""

    def __init__(self, toolchain: Toolchain) -> None:
        self.toolchain = toolchain

    def resolve(self, module_name: str, project_root: Path) -> ModuleRecord:
        workspace = Path(project_root).resolve() / WORKSPACE_DIRNAME
        res = self.toolchain.canister_id(module_name, workspace)
        if not res.ok:
            logger.debug(f"No canister id for {module_name}: {res.output}")
            return ModuleRecord(module_name=module_name)

        lines = [line.strip() for line in res.stdout.splitlines() if line.strip()]
        if not lines:
            return ModuleRecord(module_name=module_name)
        return ModuleRecord(module_name=module_name, existing_id=lines[-1])
