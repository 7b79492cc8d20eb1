from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class Labeled(Protocol):
    """Anything the pipeline can run: a provisioning Step or a verification Check."""

    name: str


@dataclass(frozen=True)
class PipelineResult:
    outcomes: List[Any]
    ran: List[str]
    not_reached: List[str] = field(default_factory=list)
    cancelled: bool = False


def run_pipeline(
    items: Sequence[Labeled],
    *,
    execute: Callable[[Any], Any],
    on_error: Callable[[Any, BaseException], Any],
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
    kind: str = "step",
) -> PipelineResult:
    """Run items strictly in order, best effort.

    execute(item) returns the item's outcome. Any Exception escaping it is
    logged and turned into an outcome by on_error(item, exc); the run always
    continues with the next item. KeyboardInterrupt is not caught.
    """

    names = [i.name for i in items]
    for label, wanted in (("start_at", start_at), ("stop_after", stop_after)):
        if wanted is not None and wanted not in names:
            raise ValueError(f"{label}: unknown {kind} {wanted!r}")

    outcomes: List[Any] = []
    ran: List[str] = []
    not_reached: List[str] = []
    cancelled = False

    started = start_at is None
    stopped = False

    for item in items:
        if not started:
            if item.name == start_at:
                started = True
            else:
                not_reached.append(item.name)
                continue

        if stopped or cancelled:
            not_reached.append(item.name)
            continue

        if cancel is not None and cancel.is_set():
            logger.warning("Cancelled before %s %s", kind, item.name)
            cancelled = True
            not_reached.append(item.name)
            continue

        logger.debug("Running %s %s", kind, item.name)
        try:
            outcome = execute(item)
        except Exception as e:
            logger.exception("Unexpected error in %s %s", kind, item.name)
            outcome = on_error(item, e)
        outcomes.append(outcome)
        ran.append(item.name)

        if stop_after is not None and item.name == stop_after:
            logger.info("Stopping after %s", stop_after)
            stopped = True

    return PipelineResult(outcomes=outcomes, ran=ran, not_reached=not_reached, cancelled=cancelled)
