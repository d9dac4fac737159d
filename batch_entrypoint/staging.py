"""
Stage job inputs in from S3 and job outputs back out.

Every decision is logged with a fixed `[input]` or `[output]` prefix so data
movement can be audited from the job log alone:

    [input] remote: s3://bucket/ref/genome.fasta ==> /scratch/genome.fasta
    [input] local: reads.fastq.gz
    [output] remote: /scratch/result.bam ==> s3://bucket/out/result.bam
    [output] ERROR: /scratch/result.bai does not exist
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from pathlib import Path

from batch_entrypoint.errors import MissingOutputError, UnsupportedDestinationError
from batch_entrypoint.storage import StorageClient, destination_for, is_remote, split_reference

logger = logging.getLogger(__name__)


class OutputOutcome(str, enum.Enum):
    MISSING = "missing"
    REMOTE = "remote"
    LOCAL = "local"
    UNSUPPORTED = "unsupported"


def stage_in(references: Iterable[str], input_dir: Path, client: StorageClient) -> list[str]:
    """
    Download each remote reference into input_dir.

    References are `s3://{prefix}/{key_pattern}`; the pattern may be a glob and
    fetch several objects. Anything that is not an s3:// URI is assumed to be
    present already and is only logged. The first failure aborts staging.

    Returns:
        The remote references that were transferred, in order
    """
    transferred: list[str] = []
    for reference in references:
        if not is_remote(reference):
            logger.info("[input] local: %s", reference)
            continue

        prefix, pattern = split_reference(reference)
        logger.info("[input] remote: %s ==> %s", reference, input_dir / pattern)
        client.download_matching(prefix, pattern, input_dir)
        transferred.append(reference)

    return transferred


def classify_destination(output_prefix: str | None) -> OutputOutcome:
    """Outcome for a present output file given the configured prefix."""
    if not output_prefix:
        return OutputOutcome.LOCAL
    if is_remote(output_prefix):
        return OutputOutcome.REMOTE
    return OutputOutcome.UNSUPPORTED


def stage_out(
    names: Iterable[str],
    output_dir: Path,
    output_prefix: str | None,
    client: StorageClient,
    *,
    strict: bool = False,
) -> list[tuple[str, OutputOutcome]]:
    """
    Check and upload each expected output file from output_dir.

    A missing file raises MissingOutputError straight away; files after it are
    not checked and earlier uploads are left in place. An output prefix that is
    not an s3:// location is logged as an error and skipped, or raises
    UnsupportedDestinationError when `strict` is set.

    Returns:
        (name, outcome) for each output processed
    """
    destination = classify_destination(output_prefix)
    outcomes: list[tuple[str, OutputOutcome]] = []

    for name in names:
        source = output_dir / name
        if not source.is_file():
            # If an expected output is not found it is an error for the whole job
            logger.error("[output] ERROR: %s does not exist", source)
            raise MissingOutputError(f"Expected output not found: {source}")

        if destination is OutputOutcome.REMOTE:
            target = destination_for(output_prefix or "", name)
            logger.info("[output] remote: %s ==> %s", source, target)
            client.upload(source, target)

        elif destination is OutputOutcome.UNSUPPORTED:
            logger.error("[output] ERROR: unsupported remote output destination %s", output_prefix)
            if strict:
                raise UnsupportedDestinationError(f"Unsupported output destination: {output_prefix}")

        else:
            logger.info("[output] local: %s", source)

        outcomes.append((name, destination))

    return outcomes
