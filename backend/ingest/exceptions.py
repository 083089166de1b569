"""
Errors raised by the ingest subsystem.

A duplicate upload is not an error: it is reported as a Duplicate outcome.
"""

from django.core.exceptions import ImproperlyConfigured


class IngestError(Exception):
    """Base class for ingest failures."""


class StoreExhausted(IngestError):
    """The configured shard tree has no remaining capacity. Not retryable."""


class FilesystemWriteFailure(IngestError):
    """A blob could not be written to its allocated location."""


class DerivedArtifactFailure(FilesystemWriteFailure):
    """A derived artifact (thumbnail) could not be produced from a blob."""


class StructuralFailure(IngestError):
    """A database failure that is not a duplicate: bad input or a broken store."""


class BatchRolledBack(IngestError):
    """Attached to items whose insert was undone because their batch rolled back."""


class BatchAborted(IngestError):
    """
    A batch was abandoned because one item failed structurally.

    Attributes:
        index: Position of the item that aborted the batch
        outcomes: Outcomes of the items attempted before the abort
    """

    def __init__(self, index, cause, outcomes):
        super().__init__(f"Batch aborted at item {index}: {cause}")
        self.index = index
        self.cause = cause
        self.outcomes = outcomes


class ConfigurationError(IngestError, ImproperlyConfigured):
    """Storage configuration is missing or malformed; refuse to start."""
