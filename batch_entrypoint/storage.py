# batch_entrypoint/storage.py
"""S3 object references and the clients that move them.

Two backends are provided:
- AwsCliClient (default): shells out to `aws s3 cp`, letting the CLI's own
  --exclude/--include filters select which keys a pattern matches.
- Boto3Client: same semantics through the SDK, for images without the CLI.
"""

from __future__ import annotations

import fnmatch
import logging
import posixpath
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from batch_entrypoint.config import JobConfig
from batch_entrypoint.errors import InvalidReferenceError, TransferError

logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"


def is_remote(reference: str) -> bool:
    return reference.startswith(S3_SCHEME)


def split_reference(reference: str) -> tuple[str, str]:
    """
    Split `s3://{prefix}/{key_pattern}` into (`s3://{prefix}`, `key_pattern`).

    Raises:
        InvalidReferenceError: If there is no key part (e.g. `s3://bucket`)
    """
    path = reference[len(S3_SCHEME) :].rstrip("/")
    prefix, _, pattern = path.rpartition("/")
    if not prefix or not pattern:
        raise InvalidReferenceError(f"Object reference has no key or pattern: {reference}")
    return f"{S3_SCHEME}{prefix}", pattern


def destination_for(prefix: str, name: str) -> str:
    """Upload target for a local file: `{prefix}/{basename(name)}`."""
    return f"{prefix.rstrip('/')}/{posixpath.basename(name)}"


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Return (bucket, key) for an s3:// URI. The key may be empty."""
    if not is_remote(uri):
        raise ValueError(f"Not an s3:// URI: {uri}")
    bucket, _, key = uri[len(S3_SCHEME) :].partition("/")
    if not bucket:
        raise ValueError(f"s3:// URI has no bucket: {uri}")
    return bucket, key


class StorageClient(Protocol):
    def download_matching(self, prefix: str, pattern: str, dest_dir: Path) -> None: ...

    def upload(self, source: Path, destination: str) -> None: ...


class AwsCliClient:
    """Transfers objects with the AWS CLI found on PATH."""

    def __init__(self, executable: str = "aws", env: Mapping[str, str] | None = None):
        self.executable = executable
        self.env = dict(env) if env is not None else None

    def download_matching(self, prefix: str, pattern: str, dest_dir: Path) -> None:
        # Exclude everything, then re-include the pattern, so a glob can fetch many keys
        self._run(
            [
                self.executable,
                "s3",
                "cp",
                "--no-progress",
                "--recursive",
                "--exclude",
                "*",
                "--include",
                pattern,
                prefix,
                str(dest_dir),
            ]
        )

    def upload(self, source: Path, destination: str) -> None:
        self._run([self.executable, "s3", "cp", "--no-progress", str(source), destination])

    def _run(self, cmd: list[str]) -> None:
        logger.debug("Running: %s", " ".join(cmd))
        try:
            subprocess.run(cmd, check=True, env=self.env)  # noqa: S603 - fixed argv, no shell
        except FileNotFoundError as exc:
            raise TransferError(f"AWS CLI not found ({self.executable}); check JOB_AWS_CLI_PATH") from exc
        except subprocess.CalledProcessError as exc:
            raise TransferError(f"aws s3 cp exited with status {exc.returncode}: {' '.join(cmd)}") from exc


class Boto3Client:
    """Transfers objects with boto3, matching keys the way `aws s3 cp --include` does."""

    def __init__(self, client: Any | None = None):
        self.s3 = client if client is not None else boto3.client("s3")

    def download_matching(self, prefix: str, pattern: str, dest_dir: Path) -> None:
        bucket, key_prefix = parse_s3_uri(prefix)
        list_prefix = f"{key_prefix.rstrip('/')}/" if key_prefix else ""

        downloaded = 0
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=list_prefix):
                for obj in page.get("Contents", []):
                    key = obj.get("Key", "")
                    relative = key[len(list_prefix) :]
                    if not relative or relative.endswith("/"):
                        continue
                    if not fnmatch.fnmatchcase(relative, pattern):
                        continue

                    local_path = dest_dir / relative
                    if not _is_within(local_path, dest_dir):
                        logger.warning("Skipping s3://%s/%s: resolves outside %s", bucket, key, dest_dir)
                        continue

                    local_path.parent.mkdir(parents=True, exist_ok=True)
                    logger.debug("Downloading s3://%s/%s -> %s", bucket, key, local_path)
                    self.s3.download_file(bucket, key, str(local_path))
                    downloaded += 1
        except (ClientError, BotoCoreError, OSError) as exc:
            raise TransferError(
                f"Download of {prefix}/{pattern} failed: {type(exc).__name__}: {exc}",
            ) from exc

        if downloaded == 0:
            logger.warning("No objects under %s matched %s", prefix, pattern)
        else:
            logger.info("Downloaded %d object(s) from %s matching %s", downloaded, prefix, pattern)

    def upload(self, source: Path, destination: str) -> None:
        bucket, key = parse_s3_uri(destination)
        try:
            self.s3.upload_file(str(source), bucket, key)
        except (ClientError, BotoCoreError, OSError) as exc:
            raise TransferError(f"Upload of {source} to {destination} failed: {type(exc).__name__}: {exc}") from exc


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
    except ValueError:
        return False
    return True


def make_client(config: JobConfig, environ: Mapping[str, str] | None = None) -> StorageClient:
    if config.storage_backend == "boto3":
        return Boto3Client()
    return AwsCliClient(env=environ)
