"""
Universal entrypoint for containerized tools run as AWS Batch jobs.

Stages the inputs named in $JOB_INPUTS into the input path, runs the command
given as arguments, then uploads the files named in $JOB_OUTPUTS to
$JOB_OUTPUT_PREFIX.

Usage:
    batch-entrypoint bwa mem -t 16 -p ref.fasta reads.fastq.gz
    batch-entrypoint --config job.yaml -- samtools sort -o result.bam aln.sam

Exit codes:
    0    success
    1    staging failed (directories, input transfer, missing output, upload)
    2    configuration error
    N    the workload's own non-zero exit status
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
from collections.abc import MutableMapping, Sequence
from pathlib import Path

import yaml

from batch_entrypoint.config import JobConfig, apply_tool_path, describe_config, load_config
from batch_entrypoint.errors import StagingError
from batch_entrypoint.paths import ensure_paths, resolve_paths
from batch_entrypoint.runner import run_workload, workload_env
from batch_entrypoint.staging import stage_in, stage_out
from batch_entrypoint.storage import StorageClient, make_client

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STAGING_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="batch-entrypoint",
        description="Stage S3 inputs, run a command, and stage outputs back to S3",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file of job settings (default: $JOB_CONFIG_FILE); environment variables take precedence",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Workload command and its arguments, passed through verbatim",
    )
    return parser


def run_job(
    config: JobConfig,
    command: Sequence[str],
    *,
    client: StorageClient | None = None,
    environ: MutableMapping[str, str] | None = None,
) -> int:
    """Stage in, run the workload, stage out. Returns the process exit code."""
    env = os.environ if environ is None else environ
    apply_tool_path(config, env)

    try:
        paths = ensure_paths(resolve_paths(config))
        if client is None:
            client = make_client(config, env)
        stage_in(config.inputs, paths.input_dir, client)
    except StagingError as exc:
        logger.error("Input staging failed: %s", exc)
        return EXIT_STAGING_FAILURE

    result = run_workload(command, env=workload_env(paths.input_dir, paths.output_dir, env))
    exit_code = _exit_status(result.returncode)

    if not result.ok and not config.stage_out_on_failure:
        logger.error("Skipping output staging because the workload failed (set JOB_STAGE_OUT_ON_FAILURE=1 to override)")
        return exit_code

    try:
        stage_out(
            config.outputs,
            paths.output_dir,
            config.output_prefix,
            client,
            strict=config.strict_output_prefix,
        )
    except StagingError as exc:
        logger.error("Output staging failed: %s", exc)
        return exit_code or EXIT_STAGING_FAILURE

    return exit_code


def _exit_status(returncode: int) -> int:
    # Killed by a signal: report it the way a shell would
    if returncode < 0:
        sig = -returncode
        logger.error("Workload terminated by %s", signal.Signals(sig).name if sig in signal.valid_signals() else sig)
        return 128 + sig
    return returncode


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    args = build_parser().parse_args(argv)
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]

    try:
        config = load_config(config_path=args.config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        logger.error("Invalid job configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    logging.getLogger().setLevel(config.log_level)
    logger.info("Job configuration: %s", describe_config(config))

    return run_job(config, command)


if __name__ == "__main__":
    raise SystemExit(main())
