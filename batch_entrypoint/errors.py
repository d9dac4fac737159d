"""Exceptions raised while staging data around a batch workload.

Every subclass of StagingError is fatal for the job: it is raised at the point
of detection and converted to a non-zero exit code by the entrypoint.
"""

from __future__ import annotations


class StagingError(RuntimeError):
    """Base class for job-aborting staging failures."""


class PathSetupError(StagingError):
    """The input or output directory could not be created."""


class InvalidReferenceError(StagingError):
    """A remote object reference has no key or pattern part."""


class TransferError(StagingError):
    """The storage client failed to download or upload an object."""


class MissingOutputError(StagingError):
    """An expected output file is absent after the workload ran."""


class UnsupportedDestinationError(StagingError):
    """The output prefix is not an S3 location (strict mode only)."""
