"""Stages a generated canister into a dfx project tree.

Layout under the project root::

    deploy_workspace/
        dfx.json
        src/<module_name>/main.mo

Both files are fully owned here and rewritten on every call. The config is
serialized deterministically so staging the same request twice produces
byte-identical files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from canister_deploy.constants import (
    CONFIG_FILENAME,
    DEFAULT_REPLICA_HOST,
    DEFAULT_REPLICA_PORT,
    MODULE_SOURCE_FILENAME,
    SOURCE_DIRNAME,
    WORKSPACE_DIRNAME,
)
from canister_deploy.models import DeploymentRequest, StagedProject
from canister_deploy.utils import atomic_write_text

logger = logging.getLogger(__name__)


def build_dfx_config(module_name: str, *, host: str, port: int) -> dict[str, Any]:
    return {
        "version": 1,
        "canisters": {
            module_name: {
                "type": "motoko",
                "main": f"{SOURCE_DIRNAME}/{module_name}/{MODULE_SOURCE_FILENAME}",
            }
        },
        "defaults": {
            "build": {
                "packtool": "",
                "args": "",
            }
        },
        "networks": {
            "local": {
                "bind": f"{host}:{port}",
                "type": "ephemeral",
            }
        },
    }


def render_dfx_config(module_name: str, *, host: str, port: int) -> str:
    return json.dumps(build_dfx_config(module_name, host=host, port=port), indent=2, sort_keys=True) + "\n"


class ProjectMaterializer:
    def __init__(self, *, host: str = DEFAULT_REPLICA_HOST, port: int = DEFAULT_REPLICA_PORT) -> None:
        self.host = host
        self.port = port

    def layout(self, module_name: str, project_root: Path) -> StagedProject:
        """Paths for a module without touching the disk."""
        root = Path(project_root).resolve()
        workspace = root / WORKSPACE_DIRNAME
        return StagedProject(
            project_root=root,
            workspace=workspace,
            module_name=module_name,
            module_source_path=workspace / SOURCE_DIRNAME / module_name / MODULE_SOURCE_FILENAME,
            config_path=workspace / CONFIG_FILENAME,
        )

    def stage(self, request: DeploymentRequest) -> StagedProject:
        """
        Write the source artifact and dfx.json for `request`.

        Overwrites on every call. Filesystem errors propagate.
        """
        staged = self.layout(request.module_name, request.project_root)
        staged.module_source_path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(staged.module_source_path, request.source_artifact)
        atomic_write_text(
            staged.config_path,
            render_dfx_config(request.module_name, host=self.host, port=self.port),
        )
        logger.info(f"Staged {request.module_name} at {staged.module_source_path}")
        return staged

    def read_artifact(self, staged: StagedProject) -> str:
        return staged.module_source_path.read_text(encoding="utf-8")

    def write_artifact(self, staged: StagedProject, source: str) -> None:
        """Replace the staged source, e.g. with a repaired artifact."""
        atomic_write_text(staged.module_source_path, source)
