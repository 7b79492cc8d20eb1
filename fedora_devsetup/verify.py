from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .lib.command import run_cmd, which
from .lib.env import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_S
from .models import STATUS_FAIL, STATUS_PASS, Check, CheckResult
from .pipeline import run_pipeline
from .report_store import load_report, save_report

logger = logging.getLogger(__name__)


class PreconditionError(RuntimeError):
    """A capability the verifier itself needs is missing; nothing was run."""


@dataclass(frozen=True)
class Summary:
    passes: int
    fails: int
    failed: List[Tuple[str, str]]

    @property
    def total(self) -> int:
        return self.passes + self.fails


class Report:
    """Aggregate report: check name -> entry, merged by key overwrite."""

    def __init__(self, entries: Optional[Dict[str, Any]] = None) -> None:
        self.entries: Dict[str, Any] = dict(entries or {})

    def __len__(self) -> int:
        return len(self.entries)

    def merge(self, result: CheckResult) -> None:
        self.entries[result.name] = result.to_entry()

    def summary(self) -> Summary:
        passes = 0
        failed: List[Tuple[str, str]] = []
        for name, entry in self.entries.items():
            status = (entry or {}).get("status")
            if status == STATUS_PASS:
                passes += 1
            elif status == STATUS_FAIL:
                failed.append((name, str(entry.get("description") or name)))
        return Summary(passes=passes, fails=len(failed), failed=failed)


@dataclass(frozen=True)
class VerificationResult:
    report: Report
    ran: List[str]
    not_reached: List[str]
    cancelled: bool

    @property
    def summary(self) -> Summary:
        return self.report.summary()


def check_preconditions(requires: Sequence[str], *, report_path: str, logs_dir: str) -> None:
    """Fail fast, before any check runs, if the harness cannot do its job."""

    missing = [r for r in requires if not which(r)]
    if missing:
        raise PreconditionError(f"{', '.join(missing)} required by the verifier; install and rerun")

    for d in {str(Path(report_path).parent), logs_dir}:
        try:
            Path(d).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreconditionError(f"cannot create {d}: {e}") from e
        if not os.access(d, os.W_OK):
            raise PreconditionError(f"{d} is not writable")


def run_check(
    check: Check,
    *,
    logs_dir: str,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> CheckResult:
    """Run one probe and write its log to <logs_dir>/<name>.log."""

    logger.info("Running: %s", check.name)
    r = run_cmd(
        check.argv,
        check=False,
        timeout_s=check.timeout_s or timeout_s,
        max_output_bytes=max_output_bytes,
    )

    log_file = os.path.join(logs_dir, f"{check.name}.log")
    Path(log_file).write_text(r.output, encoding="utf-8")

    status = STATUS_PASS if r.ok else STATUS_FAIL
    if status == STATUS_FAIL:
        logger.info("%s: fail (exit %s)", check.name, r.returncode)

    return CheckResult(
        name=check.name,
        description=check.description,
        status=status,
        log_file=log_file,
        log=r.output,
        returncode=r.returncode,
        timed_out=r.timed_out,
        truncated=r.truncated,
        duration_s=r.duration_s,
    )


def run_verification(
    checks: Sequence[Check],
    *,
    report_path: str,
    logs_dir: str,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    keep_previous: bool = False,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
) -> VerificationResult:
    """Run checks in order, persisting the report after every merge.

    The report starts empty unless keep_previous, in which case entries of
    the existing report file are kept and overwritten by name.
    """

    Path(logs_dir).mkdir(parents=True, exist_ok=True)
    report = Report(load_report(report_path) if keep_previous else None)
    save_report(report_path, report.entries)

    def record(result: CheckResult) -> CheckResult:
        report.merge(result)
        save_report(report_path, report.entries)
        return result

    def execute(check: Check) -> CheckResult:
        return record(run_check(check, logs_dir=logs_dir, timeout_s=timeout_s, max_output_bytes=max_output_bytes))

    def on_error(check: Check, exc: BaseException) -> CheckResult:
        return record(
            CheckResult(
                name=check.name,
                description=check.description,
                status=STATUS_FAIL,
                log_file=os.path.join(logs_dir, f"{check.name}.log"),
                log=f"error: {exc}\n",
                returncode=-1,
            )
        )

    result = run_pipeline(
        checks,
        execute=execute,
        on_error=on_error,
        start_at=start_at,
        stop_after=stop_after,
        cancel=cancel,
        kind="check",
    )
    return VerificationResult(report=report, ran=result.ran, not_reached=result.not_reached, cancelled=result.cancelled)


def summary_lines(summary: Summary) -> List[str]:
    lines = [f"PASSED: {summary.passes}/{summary.total} checks"]
    if summary.fails:
        lines.append(f"FAILED: {summary.fails}/{summary.total} checks")
        lines.append("Failed checks:")
        lines.extend(f"  x {description}" for _, description in summary.failed)
    else:
        lines.append("All checks passed")
    return lines


def log_summary(summary: Summary, *, report_path: str, logs_dir: str) -> None:
    logger.info("Verification results summary")
    for line in summary_lines(summary):
        logger.info(line)
    logger.info("Full report: %s", report_path)
    logger.info("Logs directory: %s", logs_dir)
