from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional


def configure_logging(
    log_path: str,
    level: int = logging.INFO,
    also_console: bool = True,
    fallback_name: str = "fedora-devsetup.log",
) -> str:
    """Configure logging.

    The file handler records everything down to DEBUG (that is where command
    output lands); the console only shows `level` and above.

    Notes:
    - If the requested path cannot be opened we fall back to a file in the
      current working directory and report the path actually used.
    - Calling this again replaces the handlers installed by the previous call.

    Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    for h in getattr(logger, "_devsetup_handlers", []):
        logger.removeHandler(h)
        h.close()

    chosen_path = log_path
    handlers: list[logging.Handler] = []

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    file_handler: Optional[logging.Handler] = None
    try:
        Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
    except OSError:
        # Fall back to a writable location.
        chosen_path = str(Path.cwd() / fallback_name)
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.DEBUG)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        console.setLevel(level)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_devsetup_handlers", handlers)

    logging.getLogger(__name__).info(
        "Logging initialized (requested=%s, actual=%s)", log_path, chosen_path
    )
    return chosen_path
