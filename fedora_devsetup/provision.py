from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .lib.command import fmt_argv, run_cmd, which
from .lib.env import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_S
from .lib.pkg import PROBE_TIMEOUT_S, rpm_installed
from .models import (
    STEP_FAILED,
    STEP_INSTALLED,
    STEP_PRESENT,
    STEP_SKIPPED,
    STEP_WOULD_INSTALL,
    ExistenceCheck,
    Step,
)
from .pipeline import run_pipeline

logger = logging.getLogger(__name__)


@dataclass
class ProvisionCtx:
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    dry_run: bool = False
    # Environment overrides for every command; PATH grows as steps add to it.
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def path(self) -> str:
        return self.env.get("PATH") or os.environ.get("PATH", "")

    def prepend_path(self, dirs: Sequence[str]) -> None:
        current = self.path.split(os.pathsep) if self.path else []
        new = [d for d in dirs if d not in current]
        if new:
            self.env["PATH"] = os.pathsep.join([*new, *current])
            logger.info("Added to PATH: %s", os.pathsep.join(new))


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: str
    blocking: bool
    detail: str = ""
    actions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status == STEP_FAILED

    def to_entry(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "blocking": self.blocking,
            "detail": self.detail,
            "actions": list(self.actions),
        }


@dataclass(frozen=True)
class ProvisionResult:
    outcomes: List[StepOutcome]
    not_reached: List[str]
    cancelled: bool

    @property
    def counts(self) -> Dict[str, int]:
        counts = {STEP_PRESENT: 0, STEP_INSTALLED: 0, STEP_WOULD_INSTALL: 0, STEP_FAILED: 0, STEP_SKIPPED: 0}
        for o in self.outcomes:
            counts[o.status] = counts.get(o.status, 0) + 1
        return counts

    @property
    def failed(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.failed]

    def to_state(self) -> Dict[str, Any]:
        return {
            "steps": {o.name: o.to_entry() for o in self.outcomes},
            "summary": {**self.counts, "total": len(self.outcomes)},
            "not_reached": list(self.not_reached),
            "cancelled": self.cancelled,
        }


def capability_present(check: ExistenceCheck, ctx: ProvisionCtx) -> bool:
    """Evaluate an existence check. Must stay free of side effects."""

    if check.kind == "command":
        return all(which(name, {"PATH": ctx.path}) for name in check.targets)
    if check.kind == "path":
        return all(os.path.exists(p) for p in check.targets)
    if check.kind == "packages":
        return rpm_installed(check.targets, env=ctx.env)
    if check.kind == "probe":
        r = run_cmd(
            check.targets,
            check=False,
            env=ctx.env,
            timeout_s=min(ctx.timeout_s, PROBE_TIMEOUT_S),
            max_output_bytes=ctx.max_output_bytes,
        )
        return r.ok
    raise ValueError(f"unknown check kind: {check.kind}")


def detect_version(step: Step, ctx: ProvisionCtx) -> Optional[str]:
    if step.version_probe is None:
        return None
    r = run_cmd(step.version_probe, check=False, env=ctx.env, timeout_s=PROBE_TIMEOUT_S, max_output_bytes=4096)
    if not r.ok:
        return None
    lines = r.output.strip().splitlines()
    return lines[0].strip() if lines else None


def run_step(step: Step, ctx: ProvisionCtx) -> StepOutcome:
    """check -> install-if-absent -> re-check, for one step."""

    missing = [r for r in step.requires if not which(r, {"PATH": ctx.path})]
    if missing:
        detail = f"{', '.join(missing)} not available; skipping {step.description}"
        logger.warning(detail)
        return StepOutcome(name=step.name, status=STEP_SKIPPED, blocking=step.blocking, detail=detail)

    if step.check is not None and capability_present(step.check, ctx):
        version = detect_version(step, ctx)
        detail = f"{step.description} already installed" + (f": {version}" if version else "")
        logger.info(detail)
        if step.path_prepend:
            ctx.prepend_path(step.path_prepend)
        return StepOutcome(name=step.name, status=STEP_PRESENT, blocking=step.blocking, detail=detail)

    if step.check is None:
        logger.info("Running %s (no existence check)", step.description)
    else:
        logger.info("Installing %s...", step.description)

    timeout_s = step.timeout_s or ctx.timeout_s
    records: List[Dict[str, Any]] = []
    failures: List[str] = []
    for action in step.actions:
        logger.info(">> %s", fmt_argv(action.argv))
        r = run_cmd(
            action.argv,
            check=False,
            env=ctx.env,
            timeout_s=timeout_s,
            max_output_bytes=ctx.max_output_bytes,
            dry_run=ctx.dry_run,
        )
        records.append({"argv": list(action.argv), "returncode": r.returncode, "timed_out": r.timed_out})
        if r.ok:
            logger.info("OK %s", action.argv[0])
        elif action.allow_failure:
            logger.info("%s failed (%s), allowed; continuing", action.argv[0], r.returncode)
        else:
            logger.warning("%s failed (%s)", action.argv[0], r.returncode)
            failures.append(f"{fmt_argv(action.argv)} exited {r.returncode}")

    if step.path_prepend:
        ctx.prepend_path(step.path_prepend)

    if ctx.dry_run:
        logger.info("%s would be installed (dry run)", step.description)
        return StepOutcome(
            name=step.name, status=STEP_WOULD_INSTALL, blocking=step.blocking, detail="dry-run", actions=records
        )

    if not failures and step.check is not None and not capability_present(step.check, ctx):
        failures.append(f"{step.description} still missing after install")

    if failures:
        detail = "; ".join(failures)
        level = logging.ERROR if step.blocking else logging.WARNING
        logger.log(level, "%s failed: %s", step.description, detail)
        return StepOutcome(name=step.name, status=STEP_FAILED, blocking=step.blocking, detail=detail, actions=records)

    logger.info("%s installed", step.description)
    return StepOutcome(name=step.name, status=STEP_INSTALLED, blocking=step.blocking, actions=records)


def run_provisioning(
    steps: Sequence[Step],
    *,
    ctx: ProvisionCtx,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
) -> ProvisionResult:
    """Run every step in declaration order; failures never stop the run."""

    phases: List[str] = []
    for s in steps:
        if s.phase and s.phase not in phases:
            phases.append(s.phase)
    current_phase: List[Optional[str]] = [None]

    def execute(step: Step) -> StepOutcome:
        if step.phase and step.phase != current_phase[0]:
            current_phase[0] = step.phase
            logger.info("== Phase %d/%d: %s ==", phases.index(step.phase) + 1, len(phases), step.phase)
        return run_step(step, ctx)

    def on_error(step: Step, exc: BaseException) -> StepOutcome:
        return StepOutcome(name=step.name, status=STEP_FAILED, blocking=step.blocking, detail=f"error: {exc}")

    result = run_pipeline(
        steps,
        execute=execute,
        on_error=on_error,
        start_at=start_at,
        stop_after=stop_after,
        cancel=cancel,
        kind="step",
    )
    return ProvisionResult(outcomes=result.outcomes, not_reached=result.not_reached, cancelled=result.cancelled)
