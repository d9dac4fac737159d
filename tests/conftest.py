"""Shared fixtures: a storage client that records transfers instead of making them."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from batch_entrypoint.errors import TransferError


class RecordingClient:
    def __init__(self, fail_downloads: bool = False, fail_uploads: bool = False):
        self.downloads: list[tuple[str, str, Path]] = []
        self.uploads: list[tuple[Path, str]] = []
        self.fail_downloads = fail_downloads
        self.fail_uploads = fail_uploads

    def download_matching(self, prefix: str, pattern: str, dest_dir: Path) -> None:
        if self.fail_downloads:
            raise TransferError(f"simulated download failure for {prefix}/{pattern}")
        self.downloads.append((prefix, pattern, dest_dir))

    def upload(self, source: Path, destination: str) -> None:
        if self.fail_uploads:
            raise TransferError(f"simulated upload failure for {source}")
        self.uploads.append((source, destination))


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def failing_client():
    return RecordingClient(fail_downloads=True, fail_uploads=True)


@pytest.fixture
def clean_env(monkeypatch):
    """Process environment with no job settings, restored after the test."""
    for key in list(os.environ):
        if key.startswith(("JOB_", "AWS_BATCH_")):
            monkeypatch.delenv(key)
    # run_job appends the CLI path to PATH
    monkeypatch.setenv("PATH", os.environ.get("PATH", ""))
    return monkeypatch
