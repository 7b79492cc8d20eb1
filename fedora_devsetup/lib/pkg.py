from __future__ import annotations

import logging
from typing import Mapping, Sequence

from .command import run_cmd

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_S = 60.0


def rpm_installed(packages: Sequence[str], *, env: Mapping[str, str] | None = None) -> bool:
    """Return True if every RPM package is installed on the host.

    `rpm -q` exits non-zero when any of the queried packages is missing, and
    also when rpm itself is unavailable (non-Fedora host), which we treat the
    same way: not present.
    """
    if not packages:
        return True
    r = run_cmd(["rpm", "-q", *packages], check=False, env=env, timeout_s=PROBE_TIMEOUT_S)
    if not r.ok:
        missing = [ln.split()[1] for ln in r.output.splitlines() if ln.startswith("package ") and "is not installed" in ln]
        if missing:
            logger.info("Missing packages: %s", " ".join(missing))
    return r.ok
