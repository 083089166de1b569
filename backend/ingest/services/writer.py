"""
Dual-Resource Ingest Writer
===========================
Persists one content row plus at most one blob (and its derived artifacts)
so that, to callers, both appear together or not at all.

Write order:
1. Begin a transaction (a savepoint when already inside one)
2. Insert the row; a uniqueness violation means Duplicate and no file is touched
3. Allocate a location and create the blob file exclusively
4. Write derived artifacts (thumbnail) next to the blob
5. Commit

Any file created by an attempt that did not commit is removed before the
outcome is returned, whatever interrupted it.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from django.db import DatabaseError, IntegrityError, transaction

from contracts.models import Document, ImageResource, SurveyResponse
from ..exceptions import (
    DerivedArtifactFailure,
    FilesystemWriteFailure,
    StructuralFailure,
)
from ..outcomes import Committed, Duplicate, Fatal, IngestOutcome
from .allocator import Allocation, BlobShardAllocator
from .config import DeriveMode
from .duplicates import DuplicateClassifier
from .thumbnails import THUMBNAIL_SUFFIX, render_thumbnail

logger = logging.getLogger(__name__)


CHUNK_SIZE = 65536  # 64KB writes for file-like blobs

# Attempts at finding a free sequential name before giving up
MAX_NAME_ATTEMPTS = 64

DEFAULT_RECORD_MODELS = {
    'document': Document,
    'image': ImageResource,
    'survey': SurveyResponse,
}


@dataclass
class IngestItem:
    """
    One logical record to ingest.

    Attributes:
        kind: Content kind ('document', 'image', 'survey')
        fields: Column values for the content row
        blob: bytes, an uploaded file, or None when the row is the content
        client_id: Client-supplied identifier used for duplicate detection
        related: Child rows inserted with the record (prompt responses)
    """
    kind: str
    fields: Dict[str, Any] = field(default_factory=dict)
    blob: Any = None
    client_id: Any = None
    related: List[Dict[str, Any]] = field(default_factory=list)


def iter_blob_chunks(blob):
    """Yield the bytes of a blob given as bytes, an UploadedFile or a file object."""
    if isinstance(blob, (bytes, bytearray, memoryview)):
        yield bytes(blob)
    elif hasattr(blob, 'chunks'):
        yield from blob.chunks(CHUNK_SIZE)
    else:
        if hasattr(blob, 'seek'):
            blob.seek(0)
        yield from iter(lambda: blob.read(CHUNK_SIZE), b'')


def discard_files(paths) -> None:
    """Remove files written by an ingest that did not commit."""
    for path in reversed(list(paths)):
        try:
            Path(path).unlink(missing_ok=True)
            logger.info(f"Removed uncommitted file {path}")
        except OSError as e:
            logger.error(f"Failed to remove uncommitted file {path}: {e}")


class DualResourceIngestWriter:
    """
    Writes content rows and their blobs.

    Args:
        allocators: BlobShardAllocator per content kind that stores blobs
        classifier: DuplicateClassifier for the database in use
        using: Database alias
        record_models: Model class per content kind
    """

    def __init__(
        self,
        allocators: Dict[str, BlobShardAllocator],
        classifier: Optional[DuplicateClassifier] = None,
        using: str = 'default',
        record_models=None,
    ):
        self.allocators = allocators
        self.using = using
        self.classifier = classifier or DuplicateClassifier.for_database(using)
        self.record_models = record_models or DEFAULT_RECORD_MODELS

    def ingest_one(self, item: IngestItem, staged: Optional[list] = None) -> IngestOutcome:
        """
        Ingest a single item.

        Args:
            item: The item to store
            staged: Optional list that receives the paths written for a
                committed item, so an enclosing batch can remove them if it
                rolls back

        Returns:
            IngestOutcome: Committed, Duplicate or Fatal

        Raises:
            StoreExhausted: If the item's shard tree is full
        """
        written: List[Path] = []
        committed = False
        try:
            self._check_item(item)
            with transaction.atomic(using=self.using):
                record = self._insert_row(item)
                if item.blob is not None:
                    self._store_blob(item, record, written)
            committed = True

        except IntegrityError as e:
            if self.classifier.is_duplicate(e):
                logger.info(f"Duplicate {item.kind} upload {item.client_id}")
                return Duplicate(item.client_id)
            logger.error(
                f"Integrity violation ingesting {item.kind} {item.client_id}: {e}",
                exc_info=True
            )
            return Fatal(self._structural(item, e))

        except DatabaseError as e:
            logger.error(
                f"Database error ingesting {item.kind} {item.client_id}: {e}",
                exc_info=True
            )
            return Fatal(self._structural(item, e))

        except StructuralFailure as e:
            logger.error(f"Rejected {item.kind} item {item.client_id}: {e}")
            return Fatal(e)

        except FilesystemWriteFailure as e:
            logger.error(
                f"Could not store blob for {item.kind} {item.client_id}: {e}",
                exc_info=True
            )
            return Fatal(e)

        finally:
            if not committed:
                discard_files(written)

        if staged is not None:
            staged.extend(written)
        logger.info(f"Committed {item.kind} {record.pk} at {record.locator or 'row only'}")
        return Committed(record.pk, record.locator)

    @staticmethod
    def _structural(item: IngestItem, cause: Exception) -> StructuralFailure:
        failure = StructuralFailure(f"Could not insert {item.kind} {item.client_id}: {cause}")
        failure.__cause__ = cause
        return failure

    def _check_item(self, item: IngestItem) -> None:
        if item.kind not in self.record_models:
            raise StructuralFailure(f"Unknown content kind '{item.kind}'")
        stores_blobs = item.kind in self.allocators
        if stores_blobs and item.blob is None:
            raise StructuralFailure(f"A {item.kind} upload requires content")
        if not stores_blobs and item.blob is not None:
            raise StructuralFailure(f"No storage is configured for {item.kind} content")

    def _insert_row(self, item: IngestItem):
        model = self.record_models[item.kind]
        manager = model._default_manager.db_manager(self.using)
        fields = dict(item.fields)
        if item.client_id is not None:
            fields[model.CLIENT_ID_FIELD] = item.client_id
        if item.related:
            return manager.create_with_prompts(prompt_responses=item.related, **fields)
        return manager.create(**fields)

    def _store_blob(self, item: IngestItem, record, written: List[Path]) -> None:
        allocator = self.allocators[item.kind]
        config = allocator.config

        if config.is_sequential:
            allocation, path, size = self._write_sequential(allocator, item.blob, written)
        else:
            allocation = allocator.allocate()
            path = allocation.path_for(str(record.pk))
            try:
                handle = self._create_exclusive(path, written)
            except FileExistsError as e:
                raise FilesystemWriteFailure(
                    f"{path} already exists but no row references it"
                ) from e
            size = self._write_blob(handle, path, item.blob)

        record.locator = path.as_uri()
        record.size_bytes = size
        update_fields = ['locator', 'size_bytes']

        if config.thumbnail_size is not None:
            if config.derive_mode is DeriveMode.INLINE:
                self._write_thumbnail(allocation, path, config.thumbnail_size, written)
                record.processed = True
                update_fields.append('processed')
            else:
                self._defer_processing(record.pk)

        record.save(using=self.using, update_fields=update_fields)

    def _write_sequential(self, allocator: BlobShardAllocator, blob, written: List[Path]):
        for _ in range(MAX_NAME_ATTEMPTS):
            allocation = allocator.allocate()
            path = allocation.path
            try:
                handle = self._create_exclusive(path, written)
            except FileExistsError:
                allocator.record_collision(allocation)
                continue
            allocator.record_write(allocation)
            return allocation, path, self._write_blob(handle, path, blob)

        raise FilesystemWriteFailure(
            f"No free file name found under {allocator.current_leaf} "
            f"after {MAX_NAME_ATTEMPTS} attempts"
        )

    @staticmethod
    def _create_exclusive(path: Path, written: List[Path]):
        """Create path, failing with FileExistsError if it is already there."""
        try:
            handle = open(path, 'xb')
        except FileExistsError:
            raise
        except OSError as e:
            raise FilesystemWriteFailure(f"Could not create {path}: {e}") from e
        written.append(path)
        return handle

    @staticmethod
    def _write_blob(handle, path: Path, blob) -> int:
        size = 0
        try:
            with handle:
                for chunk in iter_blob_chunks(blob):
                    handle.write(chunk)
                    size += len(chunk)
        except OSError as e:
            raise FilesystemWriteFailure(f"Could not write {path}: {e}") from e
        return size

    def _write_thumbnail(self, allocation: Allocation, source: Path, size, written: List[Path]) -> None:
        target = allocation.sibling(THUMBNAIL_SUFFIX)
        try:
            handle = self._create_exclusive(target, written)
        except FileExistsError as e:
            raise DerivedArtifactFailure(f"Thumbnail {target} already exists") from e
        with handle:
            render_thumbnail(source, handle, size)

    def _defer_processing(self, image_id) -> None:
        from ..tasks import process_image

        transaction.on_commit(
            lambda: process_image.delay(str(image_id)),
            using=self.using
        )
