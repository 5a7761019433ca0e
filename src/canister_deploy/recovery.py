"""
Recovery pipeline for canisters that fail `moc --check`.

Recovery runs as a fixed plan of tiers chosen up front from the first
diagnostic, then executed in order:

    missing support library:  IMPORT_REPAIR -> TOOLCHAIN_ENVIRONMENT_FIX
                              -> ARTIFACT_SIMPLIFICATION -> MINIMAL_FALLBACK_ARTIFACT
    anything else:            IMPORT_REPAIR -> EXTERNAL_REWRITE -> MINIMAL_FALLBACK_ARTIFACT

The artifact is re-validated after each tier; the first pass ends the run.
Every plan ends with MINIMAL_FALLBACK_ARTIFACT and contains no tier twice,
so `recover` always returns a deployable artifact. Only filesystem errors
escape.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from canister_deploy.codegen import CodeGenService, build_rewrite_prompt
from canister_deploy.errors import RecoveryExhausted
from canister_deploy.json_extract import JsonExtractError, extract_canister_code
from canister_deploy.logging import JsonlLogger
from canister_deploy.materializer import ProjectMaterializer
from canister_deploy.models import RecoveryReport, RecoveryTier, StagedProject, ValidationResult
from canister_deploy.motoko import MINIMAL_FALLBACK_ARTIFACT, add_missing_imports, simplify_artifact
from canister_deploy.toolchain import Toolchain
from canister_deploy.validator import ArtifactValidator

logger = logging.getLogger(__name__)

MISSING_SUPPORT_LIBRARY_RE = re.compile(
    r'\[M0010\]|package "base" not defined|\[M0009\][^\n]*[/\\]base[/\\]|support library unavailable',
    re.IGNORECASE,
)

TERMINAL_TIER = RecoveryTier.MINIMAL_FALLBACK_ARTIFACT

_SUPPORT_LIBRARY_PLAN = (
    RecoveryTier.IMPORT_REPAIR,
    RecoveryTier.TOOLCHAIN_ENVIRONMENT_FIX,
    RecoveryTier.ARTIFACT_SIMPLIFICATION,
    RecoveryTier.MINIMAL_FALLBACK_ARTIFACT,
)
_GENERIC_PLAN = (
    RecoveryTier.IMPORT_REPAIR,
    RecoveryTier.EXTERNAL_REWRITE,
    RecoveryTier.MINIMAL_FALLBACK_ARTIFACT,
)


def matches_missing_support_library(raw_error: str | None) -> bool:
    return bool(raw_error) and MISSING_SUPPORT_LIBRARY_RE.search(raw_error) is not None


def plan_tiers(raw_error: str | None) -> tuple[RecoveryTier, ...]:
    """The ordered tiers to try for a diagnostic. Pure function of the text."""
    if matches_missing_support_library(raw_error):
        return _SUPPORT_LIBRARY_PLAN
    return _GENERIC_PLAN


def check_plan(plan: tuple[RecoveryTier, ...]) -> None:
    """
    Raises:
        RecoveryExhausted: If the plan could end without a deployable artifact.
    """
    if not plan or plan[-1] is not TERMINAL_TIER:
        raise RecoveryExhausted(f"recovery plan does not end with {TERMINAL_TIER.name}: {[t.name for t in plan]}")
    if len(set(plan)) != len(plan):
        raise RecoveryExhausted(f"recovery plan repeats a tier: {[t.name for t in plan]}")


class RecoveryPipeline:
    def __init__(
        self,
        validator: ArtifactValidator,
        materializer: ProjectMaterializer,
        toolchain: Toolchain,
        codegen: CodeGenService | None = None,
        *,
        events: JsonlLogger | None = None,
    ) -> None:
        self.validator = validator
        self.materializer = materializer
        self.toolchain = toolchain
        self.codegen = codegen
        self.events = events
        self._handlers: dict[RecoveryTier, Callable[[StagedProject, str], ValidationResult]] = {
            RecoveryTier.IMPORT_REPAIR: self._import_repair,
            RecoveryTier.TOOLCHAIN_ENVIRONMENT_FIX: self._toolchain_environment_fix,
            RecoveryTier.ARTIFACT_SIMPLIFICATION: self._artifact_simplification,
            RecoveryTier.MINIMAL_FALLBACK_ARTIFACT: self._minimal_fallback,
            RecoveryTier.EXTERNAL_REWRITE: self._external_rewrite,
        }

    def recover(self, staged: StagedProject, raw_error: str | None) -> tuple[StagedProject, RecoveryReport]:
        """
        Repair the staged artifact until it validates.

        Returns:
            The staged project (its source rewritten in place) and the tier audit trail.

        Raises:
            OSError: If a repaired artifact cannot be written.
        """
        plan = plan_tiers(raw_error)
        check_plan(plan)
        logger.info(f"Recovering {staged.module_name} with plan {[t.name for t in plan]}")

        report = RecoveryReport()
        diagnostic = raw_error or ""
        for tier in plan:
            report.tiers_attempted.append(tier)
            result = self._handlers[tier](staged, diagnostic)
            self._event("recovery_tier", module_name=staged.module_name, tier=tier.name.lower(), passed=result.passed)
            if result.passed or tier is TERMINAL_TIER:
                report.succeeded_tier = tier
                logger.info(f"Recovery tier {tier.name} produced a deployable artifact")
                return staged, report
            logger.info(f"Recovery tier {tier.name} did not resolve validation")
            if result.raw_error:
                diagnostic = result.raw_error

        raise RecoveryExhausted("recovery plan ended without a deployable artifact")

    def _event(self, name: str, **fields: object) -> None:
        if self.events is not None:
            self.events.event(name, **fields)

    def _write_and_check(self, staged: StagedProject, source: str) -> ValidationResult:
        self.materializer.write_artifact(staged, source)
        return self.validator.check(staged)

    def _import_repair(self, staged: StagedProject, diagnostic: str) -> ValidationResult:
        source = self.materializer.read_artifact(staged)
        repaired = add_missing_imports(source)
        if repaired == source:
            return ValidationResult(passed=False, raw_error=diagnostic)
        return self._write_and_check(staged, repaired)

    def _toolchain_environment_fix(self, staged: StagedProject, diagnostic: str) -> ValidationResult:
        res = self.toolchain.upgrade()
        if not res.ok:
            logger.warning(f"dfx upgrade failed, continuing with cache install: {res.output}")
        res = self.toolchain.cache_install()
        if not res.ok:
            logger.warning(f"dfx cache install failed: {res.output}")
        return self.validator.check(staged)

    def _artifact_simplification(self, staged: StagedProject, diagnostic: str) -> ValidationResult:
        source = self.materializer.read_artifact(staged)
        simplified = simplify_artifact(source)
        if simplified == source:
            return ValidationResult(passed=False, raw_error=diagnostic)
        return self._write_and_check(staged, simplified)

    def _external_rewrite(self, staged: StagedProject, diagnostic: str) -> ValidationResult:
        if self.codegen is None:
            logger.info("No code generation service configured; skipping external rewrite")
            return ValidationResult(passed=False, raw_error=diagnostic)

        source = self.materializer.read_artifact(staged)
        prompt = build_rewrite_prompt(module_name=staged.module_name, source=source, diagnostic=diagnostic)
        try:
            reply = self.codegen.generate(prompt)
        except Exception as e:
            # Any failure of the external service only fails this tier.
            logger.warning(f"External rewrite request failed: {type(e).__name__}: {e}")
            return ValidationResult(passed=False, raw_error=diagnostic)

        try:
            rewritten = extract_canister_code(reply)
        except JsonExtractError as e:
            logger.warning(f"External rewrite reply could not be parsed: {e}")
            return ValidationResult(passed=False, raw_error=diagnostic)
        return self._write_and_check(staged, rewritten)

    def _minimal_fallback(self, staged: StagedProject, diagnostic: str) -> ValidationResult:
        logger.warning(f"Replacing {staged.module_name} with the minimal fallback canister")
        result = self._write_and_check(staged, MINIMAL_FALLBACK_ARTIFACT)
        if not result.passed:
            logger.warning(f"Minimal fallback canister did not validate: {result.raw_error}")
        return result
