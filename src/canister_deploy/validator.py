"""Offline static check of a staged canister with `moc --check`."""

from __future__ import annotations

import logging

from canister_deploy.models import StagedProject, ValidationResult
from canister_deploy.toolchain import Toolchain
from canister_deploy.utils import tail_text

logger = logging.getLogger(__name__)

# Matches the "missing support library" signature (see recovery.MISSING_SUPPORT_LIBRARY_RE).
SUPPORT_LIBRARY_UNAVAILABLE = "support library unavailable"


class ArtifactValidator:
    def __init__(self, toolchain: Toolchain) -> None:
        self.toolchain = toolchain

    def check(self, staged: StagedProject) -> ValidationResult:
        """
        Type-check the staged source. Read-only with respect to the artifact.

        Exit code zero passes; anything else fails with the raw diagnostics.
        """
        support = self.toolchain.support_paths()
        if support is None:
            msg = f"{SUPPORT_LIBRARY_UNAVAILABLE}: dfx cache has no moc compiler or base library"
            logger.warning(msg)
            return ValidationResult(passed=False, raw_error=msg)

        res = self.toolchain.moc_check(support, staged.module_source_path)
        if res.ok:
            logger.info(f"Validation passed for {staged.module_name}")
            return ValidationResult(passed=True)

        raw = tail_text(res.output or f"moc exited with code {res.returncode}")
        logger.info(f"Validation failed for {staged.module_name}: {raw.splitlines()[0] if raw else ''}")
        return ValidationResult(passed=False, raw_error=raw)
