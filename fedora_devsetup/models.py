from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

STATUS_PASS = "pass"
STATUS_FAIL = "fail"

STEP_PRESENT = "present"
STEP_INSTALLED = "installed"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"
STEP_WOULD_INSTALL = "would_install"


@dataclass(frozen=True)
class Action:
    """One install command of a Step."""

    argv: Tuple[str, ...]
    allow_failure: bool = False


@dataclass(frozen=True)
class ExistenceCheck:
    """Read-only probe telling whether a Step's capability is already there.

    kind is one of:
    - command: every name in targets resolves on PATH
    - path: every path in targets exists
    - probe: targets is an argv; exit status 0 means present
    - packages: every RPM in targets is installed (rpm -q)
    """

    kind: str
    targets: Tuple[str, ...]


@dataclass(frozen=True)
class Step:
    name: str
    description: str
    phase: Optional[str]
    check: Optional[ExistenceCheck]
    actions: Tuple[Action, ...]
    blocking: bool = False
    requires: Tuple[str, ...] = ()
    version_probe: Optional[Tuple[str, ...]] = None
    path_prepend: Tuple[str, ...] = ()
    timeout_s: Optional[float] = None


@dataclass(frozen=True)
class Check:
    name: str
    description: str
    argv: Tuple[str, ...]
    timeout_s: Optional[float] = None


@dataclass(frozen=True)
class CheckResult:
    name: str
    description: str
    status: str
    log_file: str
    log: str
    returncode: int
    timed_out: bool = False
    truncated: bool = False
    duration_s: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status == STATUS_PASS

    def to_entry(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "status": self.status,
            "log_file": self.log_file,
            "log": self.log,
            "returncode": self.returncode,
            "timed_out": self.timed_out,
            "truncated": self.truncated,
            "duration_s": self.duration_s,
        }
