"""Resolve and create the job's input and output directories.

AWS Batch places multiple jobs on one instance. When a job uses host-mounted
scratch, the isolation key (job id and attempt) gives it a unique subpath.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from batch_entrypoint.config import JobConfig
from batch_entrypoint.errors import PathSetupError

logger = logging.getLogger(__name__)

FALLBACK_KEY_LENGTH = 8


@dataclass(frozen=True)
class JobPaths:
    input_dir: Path
    output_dir: Path
    isolation_key: str | None = None


def isolation_key(config: JobConfig) -> str:
    """
    Per-job namespace token.

    Uses `{job_id}/{job_attempt}` when the scheduler provides a job id, else a
    short md5 token of the time the config was loaded. The fallback is stable
    for the lifetime of one JobConfig.
    """
    if config.batch_job_id:
        if config.batch_job_attempt:
            return f"{config.batch_job_id}/{config.batch_job_attempt}"
        return config.batch_job_id

    digest = hashlib.md5(config.started_at.encode("utf-8")).hexdigest()  # noqa: S324 - not a security use
    return digest[:FALLBACK_KEY_LENGTH]


def resolve_paths(config: JobConfig) -> JobPaths:
    if not config.data_isolation:
        return JobPaths(input_dir=config.input_path, output_dir=config.output_path)

    key = isolation_key(config)
    return JobPaths(
        input_dir=config.input_path / key,
        output_dir=config.output_path / key,
        isolation_key=key,
    )


def ensure_paths(paths: JobPaths) -> JobPaths:
    """Create both directories (and parents). Safe to call when they exist."""
    for directory in (paths.input_dir, paths.output_dir):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PathSetupError(f"Could not create directory {directory}: {exc}") from exc

    if paths.isolation_key:
        logger.info("Data isolation enabled (key=%s)", paths.isolation_key)
    logger.info("Input path: %s", paths.input_dir)
    logger.info("Output path: %s", paths.output_dir)
    return paths
