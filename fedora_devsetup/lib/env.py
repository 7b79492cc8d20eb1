from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    report_dir: str = "verification_report"
    report_name: str = "report.json"
    logs_subdir: str = "logs"
    verify_log_name: str = "verify.log"
    provision_log_prefix: str = "/tmp/fedora-devsetup-"


PATHS = Paths()

DEFAULT_TIMEOUT_S = 600.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024


def timestamped_provision_log(now: float | None = None) -> str:
    """Per-run provisioning log path, e.g. /tmp/fedora-devsetup-1700000000.log."""
    ts = int(time.time() if now is None else now)
    return f"{PATHS.provision_log_prefix}{ts}.log"
