"""
Unit Tests for the Batch Ingest Coordinator
===========================================
Tests cover:
- Duplicates inside a batch only skip that item
- Structural failures abort the batch
- Other failures roll the whole batch back, files included
- Databases without savepoints
"""

import shutil
import tempfile
import uuid
from pathlib import Path
from unittest.mock import patch

from django.db import connection
from django.test import TestCase, TransactionTestCase

from contracts.models import ImageResource, PromptResponse, SurveyResponse
from ingest.exceptions import BatchAborted, BatchRolledBack, FilesystemWriteFailure, StructuralFailure
from ingest.outcomes import Committed, Duplicate
from ingest.services import (
    BatchIngestCoordinator,
    BlobShardAllocator,
    DualResourceIngestWriter,
    IngestItem,
    KindConfig,
    NamingMode,
)
from ingest.tests_writer import jpeg_bytes, stored_files, survey_item


class BatchIngestTests(TestCase):
    """Tests for BatchIngestCoordinator with savepoints."""

    def setUp(self):
        self.image_root = Path(tempfile.mkdtemp()).resolve()
        image = KindConfig(
            kind='image',
            root=self.image_root,
            depth=2,
            fanout=10,
            files_per_directory=10,
            naming_mode=NamingMode.SEQUENTIAL,
            extension='.jpg',
            name_width=3,
        )
        self.writer = DualResourceIngestWriter({'image': BlobShardAllocator(image)})
        self.coordinator = BatchIngestCoordinator(self.writer)

    def tearDown(self):
        shutil.rmtree(self.image_root, ignore_errors=True)

    def _image(self, image_id=None):
        return IngestItem(
            kind='image',
            fields={'owner': 'alice'},
            blob=jpeg_bytes(),
            client_id=image_id or uuid.uuid4(),
        )

    # ===================
    # Duplicate Tests
    # ===================

    def test_duplicate_in_batch_is_skipped(self):
        """C, C, D, C, C: the repeated item is reported and the rest committed."""
        first = uuid.uuid4()
        ids = [first, uuid.uuid4(), first, uuid.uuid4(), uuid.uuid4()]

        outcomes = self.coordinator.ingest_batch([survey_item(i) for i in ids])

        self.assertEqual(
            [outcome.status for outcome in outcomes],
            ['committed', 'committed', 'duplicate', 'committed', 'committed'],
        )
        self.assertEqual(outcomes[2], Duplicate(first))
        self.assertEqual(SurveyResponse.objects.count(), 4)
        self.assertEqual(PromptResponse.objects.count(), 8)

    def test_previously_stored_item_is_duplicate(self):
        """An item stored by an earlier batch is a duplicate in the next one."""
        existing = uuid.uuid4()
        self.coordinator.ingest_batch([survey_item(existing)])

        outcomes = self.coordinator.ingest_batch([survey_item(uuid.uuid4()), survey_item(existing)])

        self.assertIsInstance(outcomes[0], Committed)
        self.assertIsInstance(outcomes[1], Duplicate)
        self.assertEqual(SurveyResponse.objects.count(), 2)

    def test_empty_batch(self):
        self.assertEqual(self.coordinator.ingest_batch([]), [])

    # ===================
    # Failure Tests
    # ===================

    def test_structural_failure_aborts_batch(self):
        """A structurally broken item aborts the batch; nothing is kept or reported stored."""
        broken = survey_item(uuid.uuid4())
        broken.kind = 'unknown'
        items = [survey_item(uuid.uuid4()), broken, survey_item(uuid.uuid4())]

        with self.assertRaises(BatchAborted) as raised:
            self.coordinator.ingest_batch(items)

        self.assertEqual(raised.exception.index, 1)
        self.assertIsInstance(raised.exception.cause, StructuralFailure)
        self.assertEqual(len(raised.exception.outcomes), 2)
        self.assertEqual(
            [outcome.status for outcome in raised.exception.outcomes],
            ['fatal', 'fatal'],
        )
        self.assertIsInstance(raised.exception.outcomes[0].error, BatchRolledBack)
        self.assertEqual(SurveyResponse.objects.count(), 0)

    def test_filesystem_failure_rolls_back_batch(self):
        """A failed blob write undoes every item of the batch, files included."""
        original = DualResourceIngestWriter._write_blob
        calls = []

        def write_blob(handle, path, blob):
            calls.append(path)
            if len(calls) == 2:
                handle.close()
                raise FilesystemWriteFailure('disk full')
            return original(handle, path, blob)

        items = [self._image(), self._image(), self._image()]
        with patch.object(DualResourceIngestWriter, '_write_blob', staticmethod(write_blob)):
            outcomes = self.coordinator.ingest_batch(items)

        self.assertEqual([outcome.status for outcome in outcomes], ['fatal', 'fatal', 'fatal'])
        self.assertIsInstance(outcomes[0].error, BatchRolledBack)
        self.assertIsInstance(outcomes[1].error, FilesystemWriteFailure)
        self.assertIsInstance(outcomes[2].error, BatchRolledBack)
        self.assertEqual(ImageResource.objects.count(), 0)
        self.assertEqual(stored_files(self.image_root), [])

    def test_committed_batch_keeps_files(self):
        outcomes = self.coordinator.ingest_batch([self._image(), self._image()])

        self.assertTrue(all(isinstance(outcome, Committed) for outcome in outcomes))
        self.assertEqual(stored_files(self.image_root), ['0/0/000.jpg', '0/0/001.jpg'])


class PerItemBatchIngestTests(TransactionTestCase):
    """
    Fallback used when the database has no savepoints.

    Runs outside a test transaction so every item gets a real one.
    """

    def setUp(self):
        self.coordinator = BatchIngestCoordinator(DualResourceIngestWriter({}))

    def test_items_committed_individually(self):
        first = uuid.uuid4()
        items = [survey_item(first), survey_item(first), survey_item(uuid.uuid4())]

        with patch.object(type(connection.features), 'uses_savepoints', False):
            outcomes = self.coordinator.ingest_batch(items)

        self.assertEqual(
            [outcome.status for outcome in outcomes],
            ['committed', 'duplicate', 'committed'],
        )
        self.assertEqual(SurveyResponse.objects.count(), 2)

    def test_structural_failure_keeps_earlier_items(self):
        broken = survey_item(uuid.uuid4())
        broken.kind = 'unknown'

        with patch.object(type(connection.features), 'uses_savepoints', False):
            with self.assertRaises(BatchAborted):
                self.coordinator.ingest_batch([survey_item(uuid.uuid4()), broken])

        self.assertEqual(SurveyResponse.objects.count(), 1)
