from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from typing import Any, Dict, Optional

from .config import Manifest, ManifestError, bundled_manifest, load_manifest
from .lib.env import PATHS, timestamped_provision_log
from .logging_utils import configure_logging
from .provision import ProvisionCtx, ProvisionResult, run_provisioning
from .report_store import save_report
from .verify import PreconditionError, VerificationResult, check_preconditions, log_summary, run_verification

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


def _install_sigterm(cancel: threading.Event) -> None:
    def handler(signum, frame):  # noqa: ARG001
        logger.warning("SIGTERM received; stopping after the current item")
        cancel.set()

    try:
        signal.signal(signal.SIGTERM, handler)
    except ValueError:
        # Not the main thread (e.g. embedded use); cancellation stays caller-driven.
        pass


def _positive(type_):
    def parse(value: str):
        try:
            n = type_(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
        if n <= 0:
            raise argparse.ArgumentTypeError(f"must be positive, got {value}")
        return n

    return parse


def _limits(args: argparse.Namespace) -> Dict[str, Any]:
    """CLI overrides; None falls back to the manifest defaults."""
    return {"timeout_s": args.timeout, "max_output_bytes": args.max_output_bytes}


def provision(
    *,
    manifest: Manifest,
    log_path: str,
    state_path: Optional[str] = None,
    dry_run: bool = False,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    timeout_s: Optional[float] = None,
    max_output_bytes: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    level: int = logging.INFO,
) -> ProvisionResult:
    """Run the provisioner, persisting step outcomes to state_path."""

    actual_log_path = configure_logging(log_path=log_path, level=level)
    logger.info("Fedora development environment setup")
    logger.info("Log: %s", actual_log_path)

    ctx = ProvisionCtx(
        timeout_s=timeout_s or manifest.timeout_s,
        max_output_bytes=max_output_bytes or manifest.max_output_bytes,
        dry_run=dry_run,
    )

    result = run_provisioning(manifest.steps, ctx=ctx, start_at=start_at, stop_after=stop_after, cancel=cancel)

    counts = result.counts
    logger.info(
        "Setup complete: %d installed, %d would install, %d already present, %d skipped, %d failed",
        counts["installed"],
        counts["would_install"],
        counts["present"],
        counts["skipped"],
        counts["failed"],
    )
    for o in result.failed:
        level_ = logging.ERROR if o.blocking else logging.WARNING
        logger.log(level_, "  x %s: %s", o.name, o.detail)
    logger.info("Log saved to: %s", actual_log_path)
    logger.info("Next: restart your shell, then run `fedora-devsetup verify`")

    if state_path:
        state = result.to_state()
        state["log_path"] = actual_log_path
        save_report(state_path, state)
        logger.info("State saved to: %s", state_path)
    return result


def verify(
    *,
    manifest: Manifest,
    out_dir: str,
    report_path: Optional[str] = None,
    log_path: Optional[str] = None,
    keep_previous: bool = False,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    timeout_s: Optional[float] = None,
    max_output_bytes: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    level: int = logging.INFO,
) -> VerificationResult:
    """Run the verifier; raises PreconditionError before any check if it cannot run."""

    report_path = report_path or os.path.join(out_dir, PATHS.report_name)
    logs_dir = os.path.join(out_dir, PATHS.logs_subdir)

    checks = manifest.checks
    check_preconditions(manifest.requires, report_path=report_path, logs_dir=logs_dir)

    configure_logging(log_path=log_path or os.path.join(out_dir, PATHS.verify_log_name), level=level)
    logger.info("Dev environment verification")
    logger.info("Report: %s", report_path)
    logger.info("Logs: %s", logs_dir)

    result = run_verification(
        checks,
        report_path=report_path,
        logs_dir=logs_dir,
        timeout_s=timeout_s or manifest.timeout_s,
        max_output_bytes=max_output_bytes or manifest.max_output_bytes,
        keep_previous=keep_previous,
        start_at=start_at,
        stop_after=stop_after,
        cancel=cancel,
    )
    log_summary(result.summary, report_path=report_path, logs_dir=logs_dir)
    return result


def cmd_provision(args: argparse.Namespace, cancel: threading.Event) -> int:
    log_path = args.log or timestamped_provision_log()
    result = provision(
        manifest=load_manifest(args.manifest),
        log_path=log_path,
        state_path=args.state or os.path.splitext(log_path)[0] + ".json",
        dry_run=args.dry_run,
        start_at=args.start_at,
        stop_after=args.stop_after,
        cancel=cancel,
        level=logging.DEBUG if args.verbose else logging.INFO,
        **_limits(args),
    )
    if args.strict and result.failed:
        return EXIT_FAILURES
    return EXIT_OK


def cmd_verify(args: argparse.Namespace, cancel: threading.Event) -> int:
    manifest = load_manifest(args.manifest)
    if args.list:
        for c in manifest.checks:
            print(f"{c.name}\t{c.description}")
        return EXIT_OK

    result = verify(
        manifest=manifest,
        out_dir=args.out_dir,
        report_path=args.report,
        log_path=args.log,
        keep_previous=args.keep_previous,
        start_at=args.start_at,
        stop_after=args.stop_after,
        cancel=cancel,
        level=logging.DEBUG if args.verbose else logging.INFO,
        **_limits(args),
    )
    if args.strict and result.summary.fails:
        return EXIT_FAILURES
    return EXIT_OK


def _add_common(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--log", default=None, help="Path to the run log")
    sp.add_argument("--start-at", default=None, help="Start at this step/check name")
    sp.add_argument("--stop-after", default=None, help="Stop after this step/check name")
    sp.add_argument("--timeout", type=_positive(float), default=None, help="Per-command timeout in seconds (default: manifest)")
    sp.add_argument("--max-output-bytes", type=_positive(int), default=None, help="Captured output cap per command (default: manifest)")
    sp.add_argument("--strict", action="store_true", help="Exit 1 if any step/check failed")
    sp.add_argument("-v", "--verbose", action="store_true", help="Show command output on the console")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fedora-devsetup")
    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("provision", help="Install the developer toolchain (idempotent)")
    sp.add_argument("--manifest", default=bundled_manifest("provision.yaml"), help="Provisioning manifest (YAML)")
    sp.add_argument("--state", default=None, help="Write step outcomes here (json|yaml)")
    sp.add_argument("--dry-run", action="store_true", help="Log install commands without running them")
    _add_common(sp)
    sp.set_defaults(func=cmd_provision)

    sp = sub.add_parser("verify", help="Probe every tool and write a JSON report")
    sp.add_argument("--manifest", default=bundled_manifest("checks.yaml"), help="Checks manifest (YAML)")
    sp.add_argument("--out-dir", default=PATHS.report_dir, help="Report directory")
    sp.add_argument("--report", default=None, help="Report path (default: <out-dir>/report.json)")
    sp.add_argument("--keep-previous", action="store_true", help="Merge into the existing report instead of starting empty")
    sp.add_argument("--list", action="store_true", help="List declared checks and exit")
    _add_common(sp)
    sp.set_defaults(func=cmd_verify)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    cancel = threading.Event()
    _install_sigterm(cancel)
    try:
        return int(args.func(args, cancel))
    except (ManifestError, PreconditionError, ValueError, OSError) as e:
        logger.error("%s", e)
        return EXIT_FATAL
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
