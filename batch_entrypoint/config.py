"""
Configuration loader for batch job entrypoints.

Settings come from the process environment (the AWS Batch job definition or
container overrides) and may be seeded from an optional YAML file. Values are
read once into an immutable JobConfig; nothing re-reads the environment later.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, cast

import yaml

logger = logging.getLogger(__name__)

DEFAULT_AWS_CLI_PATH = "/opt/miniconda/bin"
DEFAULT_INPUT_PATH = "."
DEFAULT_OUTPUT_PATH = "."
DEFAULT_STORAGE_BACKEND = "cli"
DEFAULT_LOG_LEVEL = "INFO"

STORAGE_BACKENDS = ("cli", "boto3")

# Variables recognized in the environment and in the YAML config file
ENV_KEYS = (
    "JOB_AWS_CLI_PATH",
    "JOB_INPUT_PATH",
    "JOB_OUTPUT_PATH",
    "JOB_DATA_ISOLATION",
    "JOB_INPUTS",
    "JOB_OUTPUTS",
    "JOB_OUTPUT_PREFIX",
    "JOB_STORAGE_BACKEND",
    "JOB_STAGE_OUT_ON_FAILURE",
    "JOB_STRICT_OUTPUT_PREFIX",
    "JOB_LOG_LEVEL",
    "AWS_BATCH_JOB_ID",
    "AWS_BATCH_JOB_ATTEMPT",
)


@dataclass(frozen=True)
class JobConfig:
    """Resolved settings for one job execution."""

    aws_cli_path: str = DEFAULT_AWS_CLI_PATH
    input_path: Path = Path(DEFAULT_INPUT_PATH)
    output_path: Path = Path(DEFAULT_OUTPUT_PATH)
    data_isolation: bool = False
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    output_prefix: str | None = None

    # Scheduler identity, used for the isolation subpath
    batch_job_id: str | None = None
    batch_job_attempt: str | None = None
    started_at: str = ""

    storage_backend: str = DEFAULT_STORAGE_BACKEND
    stage_out_on_failure: bool = False
    strict_output_prefix: bool = False
    log_level: str = DEFAULT_LOG_LEVEL


def load_config(
    environ: Mapping[str, str] | None = None,
    config_path: Path | str | None = None,
) -> JobConfig:
    """
    Build a JobConfig from the environment, optionally layered over a YAML file.

    Args:
        environ: Mapping to read settings from. Defaults to os.environ.
        config_path: YAML file of defaults. Falls back to $JOB_CONFIG_FILE;
            no file is read when neither is set.

    Returns:
        Immutable JobConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        ValueError: If the YAML root is not a mapping or the storage backend is unknown
    """
    env = os.environ if environ is None else environ

    if config_path is None:
        config_path = _get(env, "JOB_CONFIG_FILE")

    settings: dict[str, str] = {}
    if config_path:
        settings.update(load_config_file(config_path, env))

    for key in ENV_KEYS:
        value = _get(env, key)
        if value is not None:
            settings[key] = value

    backend = settings.get("JOB_STORAGE_BACKEND", DEFAULT_STORAGE_BACKEND).strip().lower()
    if backend not in STORAGE_BACKENDS:
        raise ValueError(f"JOB_STORAGE_BACKEND must be one of {STORAGE_BACKENDS}, got {backend!r}")

    log_level = settings.get("JOB_LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ValueError(f"JOB_LOG_LEVEL is not a logging level: {log_level!r}")

    config = JobConfig(
        aws_cli_path=settings.get("JOB_AWS_CLI_PATH", DEFAULT_AWS_CLI_PATH),
        input_path=Path(settings.get("JOB_INPUT_PATH", DEFAULT_INPUT_PATH)),
        output_path=Path(settings.get("JOB_OUTPUT_PATH", DEFAULT_OUTPUT_PATH)),
        data_isolation=_flag(settings.get("JOB_DATA_ISOLATION")),
        inputs=parse_list(settings.get("JOB_INPUTS")),
        outputs=parse_list(settings.get("JOB_OUTPUTS")),
        output_prefix=settings.get("JOB_OUTPUT_PREFIX"),
        batch_job_id=settings.get("AWS_BATCH_JOB_ID"),
        batch_job_attempt=settings.get("AWS_BATCH_JOB_ATTEMPT"),
        started_at=datetime.now(timezone.utc).isoformat(),
        storage_backend=backend,
        stage_out_on_failure=_flag(settings.get("JOB_STAGE_OUT_ON_FAILURE")),
        strict_output_prefix=_flag(settings.get("JOB_STRICT_OUTPUT_PREFIX")),
        log_level=log_level,
    )

    if config.output_prefix and not config.output_prefix.startswith("s3://"):
        logger.warning("JOB_OUTPUT_PREFIX is not an s3:// location and outputs will not be uploaded: %s", config.output_prefix)
    if config.outputs and not config.output_prefix:
        logger.info("JOB_OUTPUT_PREFIX not set; %d output(s) will be kept local", len(config.outputs))

    return config


def load_config_file(config_path: Path | str, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """
    Read a YAML mapping of job settings keyed by the JOB_* variable names.

    JOB_INPUTS and JOB_OUTPUTS may be YAML lists; `${NAME}` values are taken
    from the environment. Unknown keys are logged and ignored.

    Raises:
        FileNotFoundError: If the config file does not exist
        ValueError: If the YAML root is not a mapping
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping, got {type(data).__name__}")

    env = os.environ if environ is None else environ
    raw = cast(dict[str, Any], _substitute_env_vars(data, env))

    settings: dict[str, str] = {}
    for key, value in raw.items():
        if key not in ENV_KEYS:
            logger.warning("Ignoring unknown key in %s: %s", config_path, key)
            continue
        if value is None:
            continue
        if isinstance(value, list):
            value = " ".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = "1" if value else ""
        value = str(value)
        if value:
            settings[key] = value
    return settings


def _substitute_env_vars(obj: Any, environ: Mapping[str, str]) -> Any:
    """Replace whole-string `${NAME}` values, at any depth, with environ[NAME] when it is set."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v, environ) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item, environ) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        return environ.get(var_name, obj)  # unset: keep the placeholder text
    return obj


def parse_list(value: str | None) -> tuple[str, ...]:
    """Split a space-delimited list; None and blank strings give an empty tuple."""
    if not value:
        return ()
    return tuple(value.split())


def apply_tool_path(config: JobConfig, environ: MutableMapping[str, str] | None = None) -> str:
    """Append the AWS CLI location to PATH so the `aws` executable can be found."""
    env = os.environ if environ is None else environ
    current = env.get("PATH", "")
    if config.aws_cli_path and config.aws_cli_path not in current.split(os.pathsep):
        env["PATH"] = f"{current}{os.pathsep}{config.aws_cli_path}" if current else config.aws_cli_path
    return env.get("PATH", "")


def describe_config(config: JobConfig) -> dict[str, Any]:
    """Settings worth logging at startup."""
    return {
        "input_path": str(config.input_path),
        "output_path": str(config.output_path),
        "data_isolation": config.data_isolation,
        "inputs": len(config.inputs),
        "outputs": len(config.outputs),
        "output_prefix": config.output_prefix,
        "storage_backend": config.storage_backend,
        "batch_job_id": config.batch_job_id,
        "batch_job_attempt": config.batch_job_attempt,
    }


def _get(environ: Mapping[str, str], key: str) -> str | None:
    # ${VAR:-default}: empty counts as unset
    value = environ.get(key)
    if value is None or value == "":
        return None
    return value


def _flag(value: str | None) -> bool:
    return value is not None and value.strip() == "1"
