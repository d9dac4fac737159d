"""Tests for S3 references and the storage client backends (no AWS access needed)"""

import subprocess
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from batch_entrypoint import storage
from batch_entrypoint.config import JobConfig
from batch_entrypoint.errors import InvalidReferenceError, TransferError
from batch_entrypoint.storage import (
    AwsCliClient,
    Boto3Client,
    destination_for,
    is_remote,
    make_client,
    parse_s3_uri,
    split_reference,
)


def test_is_remote():
    assert is_remote("s3://bucket/key")
    assert not is_remote("reads.fastq.gz")
    assert not is_remote("/data/s3://odd")
    assert not is_remote("S3://bucket/key")


@pytest.mark.parametrize(
    ("reference", "expected"),
    [
        ("s3://bucket/path/pattern", ("s3://bucket/path", "pattern")),
        ("s3://b/p/ref.fasta", ("s3://b/p", "ref.fasta")),
        ("s3://b/reads/*_1*.fastq.gz", ("s3://b/reads", "*_1*.fastq.gz")),
        ("s3://b/key", ("s3://b", "key")),
        ("s3://b/dir/sub/", ("s3://b/dir", "sub")),
    ],
)
def test_split_reference(reference, expected):
    assert split_reference(reference) == expected


@pytest.mark.parametrize("reference", ["s3://bucket", "s3://bucket/", "s3://"])
def test_split_reference_without_key(reference):
    with pytest.raises(InvalidReferenceError):
        split_reference(reference)


def test_destination_for():
    assert destination_for("s3://b/out", "result.bam") == "s3://b/out/result.bam"
    assert destination_for("s3://b/out/", "result.bam") == "s3://b/out/result.bam"
    assert destination_for("s3://b/out", "sub/dir/result.bam") == "s3://b/out/result.bam"


def test_parse_s3_uri():
    assert parse_s3_uri("s3://b/a/b/c.txt") == ("b", "a/b/c.txt")
    assert parse_s3_uri("s3://b") == ("b", "")
    with pytest.raises(ValueError):
        parse_s3_uri("/local/path")


# ---------------------------------------------------------------------------
# AWS CLI backend
# ---------------------------------------------------------------------------


@pytest.fixture
def recorded_runs(monkeypatch):
    calls = []

    def fake_run(cmd, check, env):
        calls.append({"cmd": cmd, "check": check, "env": env})
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(storage.subprocess, "run", fake_run)
    return calls


def test_cli_download_uses_include_filter(recorded_runs, tmp_path):
    AwsCliClient().download_matching("s3://b/p", "ref.fasta", tmp_path)

    assert recorded_runs[0]["cmd"] == [
        "aws",
        "s3",
        "cp",
        "--no-progress",
        "--recursive",
        "--exclude",
        "*",
        "--include",
        "ref.fasta",
        "s3://b/p",
        str(tmp_path),
    ]
    assert recorded_runs[0]["check"] is True


def test_cli_upload(recorded_runs, tmp_path):
    source = tmp_path / "result.bam"
    AwsCliClient(env={"PATH": "/opt/aws"}).upload(source, "s3://b/out/result.bam")

    assert recorded_runs[0]["cmd"] == ["aws", "s3", "cp", "--no-progress", str(source), "s3://b/out/result.bam"]
    assert recorded_runs[0]["env"] == {"PATH": "/opt/aws"}


def test_cli_failure_raises_transfer_error(monkeypatch, tmp_path):
    def fake_run(cmd, check, env):
        raise subprocess.CalledProcessError(1, cmd)

    monkeypatch.setattr(storage.subprocess, "run", fake_run)

    with pytest.raises(TransferError, match="status 1"):
        AwsCliClient().download_matching("s3://b/p", "x", tmp_path)


def test_cli_missing_executable(tmp_path):
    client = AwsCliClient(executable=str(tmp_path / "no-such-aws"))

    with pytest.raises(TransferError, match="AWS CLI not found"):
        client.upload(tmp_path / "x", "s3://b/x")


# ---------------------------------------------------------------------------
# boto3 backend
# ---------------------------------------------------------------------------


class FakeS3:
    def __init__(self, keys, fail_with=None):
        self.keys = keys
        self.fail_with = fail_with
        self.downloaded = []
        self.uploaded = []

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return self

    def paginate(self, Bucket, Prefix):
        matching = [{"Key": k} for k in self.keys if k.startswith(Prefix)]
        # two pages to exercise pagination
        yield {"Contents": matching[:1]}
        yield {"Contents": matching[1:]} if matching[1:] else {}

    def download_file(self, bucket, key, filename):
        if self.fail_with is not None:
            raise self.fail_with
        Path(filename).write_text(key, encoding="utf-8")
        self.downloaded.append((bucket, key, filename))

    def upload_file(self, filename, bucket, key):
        if self.fail_with is not None:
            raise self.fail_with
        self.uploaded.append((filename, bucket, key))


def test_boto3_download_matches_pattern(tmp_path):
    s3 = FakeS3(
        [
            "reads/sample_1.fastq.gz",
            "reads/sample_2.fastq.gz",
            "reads/notes.txt",
            "reads/",
            "readsother/x.fastq.gz",
            "other/c.fastq.gz",
        ]
    )

    Boto3Client(client=s3).download_matching("s3://b/reads", "*.fastq.gz", tmp_path)

    assert sorted(key for _, key, _ in s3.downloaded) == ["reads/sample_1.fastq.gz", "reads/sample_2.fastq.gz"]
    assert (tmp_path / "sample_1.fastq.gz").read_text(encoding="utf-8") == "reads/sample_1.fastq.gz"
    assert not (tmp_path / "notes.txt").exists()


def test_boto3_download_keeps_nested_layout(tmp_path):
    s3 = FakeS3(["ref/v1/genome.fasta", "ref/genome.fasta"])

    Boto3Client(client=s3).download_matching("s3://b/ref", "*genome.fasta", tmp_path)

    assert (tmp_path / "genome.fasta").exists()
    assert (tmp_path / "v1" / "genome.fasta").exists()


def test_boto3_exact_key_only(tmp_path):
    s3 = FakeS3(["p/ref.fasta", "p/ref.fasta.fai"])

    Boto3Client(client=s3).download_matching("s3://b/p", "ref.fasta", tmp_path)

    assert [key for _, key, _ in s3.downloaded] == ["p/ref.fasta"]


def test_boto3_no_match_is_not_an_error(tmp_path):
    s3 = FakeS3(["p/other.txt"])
    Boto3Client(client=s3).download_matching("s3://b/p", "ref.fasta", tmp_path)
    assert s3.downloaded == []


def test_boto3_client_error_raises_transfer_error(tmp_path):
    error = ClientError({"Error": {"Code": "403", "Message": "Forbidden"}}, "GetObject")
    s3 = FakeS3(["p/ref.fasta"], fail_with=error)

    with pytest.raises(TransferError, match="ClientError"):
        Boto3Client(client=s3).download_matching("s3://b/p", "ref.fasta", tmp_path)


def test_boto3_upload(tmp_path):
    s3 = FakeS3([])
    source = tmp_path / "result.bam"

    Boto3Client(client=s3).upload(source, "s3://b/out/result.bam")

    assert s3.uploaded == [(str(source), "b", "out/result.bam")]


def test_boto3_upload_failure(tmp_path):
    error = ClientError({"Error": {"Code": "NoSuchBucket", "Message": "missing"}}, "PutObject")
    s3 = FakeS3([], fail_with=error)

    with pytest.raises(TransferError, match="Upload"):
        Boto3Client(client=s3).upload(tmp_path / "x", "s3://b/x")


def test_make_client_default_is_cli():
    client = make_client(JobConfig(), {"PATH": "/opt/miniconda/bin"})
    assert isinstance(client, AwsCliClient)
    assert client.env == {"PATH": "/opt/miniconda/bin"}


def test_make_client_boto3(monkeypatch):
    sentinel = object()
    monkeypatch.setattr(storage.boto3, "client", lambda service: sentinel)

    client = make_client(JobConfig(storage_backend="boto3"))

    assert isinstance(client, Boto3Client)
    assert client.s3 is sentinel


def test_boto3_skips_keys_resolving_outside_destination(tmp_path):
    s3 = FakeS3(["p/../escaped.txt", "p/kept.txt"])
    dest = tmp_path / "in"
    dest.mkdir()

    Boto3Client(client=s3).download_matching("s3://b/p", "*", dest)

    assert not (tmp_path / "escaped.txt").exists()
    assert (dest / "kept.txt").exists()
    assert [key for _, key, _ in s3.downloaded] == ["p/kept.txt"]
