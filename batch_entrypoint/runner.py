"""Run the caller's workload command as a child process."""

from __future__ import annotations

import errno
import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

COMMAND_NOT_EXECUTABLE = 126
COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class WorkloadResult:
    command: tuple[str, ...]
    returncode: int
    started_at: str
    finished_at: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def workload_env(
    input_dir: Path,
    output_dir: Path,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the workload: the caller's plus the resolved data directories."""
    env = dict(os.environ if base is None else base)
    env["JOB_INPUT_DIR"] = str(input_dir)
    env["JOB_OUTPUT_DIR"] = str(output_dir)
    return env


def run_workload(
    command: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> WorkloadResult:
    """
    Execute `command` verbatim (no shell) and wait for it.

    The exit status is reported, not raised. An empty command is a no-op that
    succeeds; an executable that cannot be found reports status 127.
    """
    argv = tuple(command)
    started_at = datetime.now(timezone.utc).isoformat()

    if not argv:
        logger.info("No workload command given; skipping")
        return WorkloadResult(argv, 0, started_at, started_at)

    logger.info("Running workload: %s", shlex.join(argv))
    try:
        proc = subprocess.run(  # noqa: S603 - caller-supplied command
            list(argv),
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            check=False,
        )
        returncode = proc.returncode
    except FileNotFoundError as exc:
        logger.error("Workload executable not found: %s (%s)", argv[0], exc)
        returncode = COMMAND_NOT_FOUND
    except PermissionError as exc:
        logger.error("Workload is not executable: %s (%s)", argv[0], exc)
        returncode = COMMAND_NOT_EXECUTABLE
    except OSError as exc:
        # e.g. ENOEXEC for a script without a shebang, ENOTDIR for a bad path
        if exc.errno in (errno.ENOENT, errno.ENOTDIR):
            logger.error("Workload executable not found: %s (%s)", argv[0], exc)
            returncode = COMMAND_NOT_FOUND
        else:
            logger.error("Workload could not be started: %s (%s)", argv[0], exc)
            returncode = COMMAND_NOT_EXECUTABLE
    finished_at = datetime.now(timezone.utc).isoformat()

    if returncode == 0:
        logger.info("Workload finished successfully")
    else:
        logger.error("Workload exited with status %d", returncode)

    return WorkloadResult(argv, returncode, started_at, finished_at)
