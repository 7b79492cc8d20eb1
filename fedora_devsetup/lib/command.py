from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import Mapping, Sequence

from .env import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)

# Conventional shell exit codes, so callers can treat these like any other failure.
RC_TIMEOUT = 124
RC_NOT_EXECUTABLE = 126
RC_NOT_FOUND = 127


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    output: str
    timed_out: bool = False
    truncated: bool = False
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def _read_bounded(fh, max_bytes: int) -> tuple[str, bool]:
    fh.seek(0, os.SEEK_END)
    size = fh.tell()
    fh.seek(0)
    data = fh.read(max_bytes)
    text = data.decode("utf-8", errors="replace")
    if size > max_bytes:
        return text + f"\n[... truncated {size - max_bytes} bytes ...]\n", True
    return text, False


def _kill_group(p: subprocess.Popen) -> None:
    try:
        os.killpg(p.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    p.wait()


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    timeout_s: float | None = DEFAULT_TIMEOUT_S,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command.
    - stdout and stderr are captured combined, spooled to a temp file and
      cut at max_output_bytes with an explicit truncation marker.
    - stdin is closed; nothing may prompt.
    - A command that is not found yields returncode 127; one that exceeds
      timeout_s is killed and yields returncode 124.
    - dry_run logs but does not execute.
    """

    argv_list = list(argv)
    logger.info("CMD %s", fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, output="")

    started = time.monotonic()
    timed_out = False
    with tempfile.TemporaryFile() as spool:
        try:
            # Own session, so a timeout can kill everything the command started.
            p = subprocess.Popen(
                argv_list,
                stdin=subprocess.DEVNULL,
                stdout=spool,
                stderr=subprocess.STDOUT,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
                start_new_session=True,
            )
        except FileNotFoundError:
            spool.write(f"command not found: {argv_list[0]}\n".encode("utf-8"))
            returncode = RC_NOT_FOUND
        except PermissionError as e:
            spool.write(f"permission denied: {e}\n".encode("utf-8"))
            returncode = RC_NOT_EXECUTABLE
        else:
            try:
                returncode = p.wait(timeout=timeout_s)
            except subprocess.TimeoutExpired:
                _kill_group(p)
                spool.write(f"\n[timed out after {timeout_s}s]\n".encode("utf-8"))
                returncode = RC_TIMEOUT
                timed_out = True
            except BaseException:
                _kill_group(p)
                raise
        output, truncated = _read_bounded(spool, max_output_bytes)

    duration = time.monotonic() - started

    if output:
        logger.debug("OUTPUT %s", output.strip())
    if timed_out:
        logger.warning("Command timed out after %ss: %s", timeout_s, fmt_argv(argv_list))

    if check and returncode != 0:
        raise RuntimeError(f"Command failed ({returncode}): {fmt_argv(argv_list)}\n{output}")

    return CmdResult(
        argv=argv_list,
        returncode=returncode,
        output=output,
        timed_out=timed_out,
        truncated=truncated,
        duration_s=round(duration, 3),
    )


def which(name: str, env: Mapping[str, str] | None = None) -> str | None:
    """shutil.which honouring a PATH override from env."""
    path = (env or {}).get("PATH") or os.environ.get("PATH")
    return shutil.which(name, path=path)
