"""
Unit Tests for the Dual-Resource Ingest Writer
==============================================
Tests cover:
- Document and image ingest (row plus blob)
- Idempotent re-upload (duplicate detection)
- Cleanup when the blob, thumbnail or row update fails
- Deferred thumbnail processing
- Survey rows with prompt responses
"""

import shutil
import tempfile
import uuid
from io import BytesIO
from pathlib import Path
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.db import DatabaseError
from django.test import TestCase
from PIL import Image

from contracts.models import Document, ImageResource, PromptResponse, SurveyResponse
from ingest.exceptions import (
    DerivedArtifactFailure,
    FilesystemWriteFailure,
    StoreExhausted,
    StructuralFailure,
)
from ingest.outcomes import Committed, Duplicate, Fatal
from ingest.services import (
    BlobShardAllocator,
    DeriveMode,
    DualResourceIngestWriter,
    IngestItem,
    KindConfig,
    NamingMode,
)


def jpeg_bytes(size=(40, 30), color='red') -> bytes:
    """Encode a small solid-color JPEG."""
    buffer = BytesIO()
    Image.new('RGB', size, color).save(buffer, format='JPEG')
    return buffer.getvalue()


def stored_files(root: Path):
    """Relative paths of every file under root."""
    return sorted(str(p.relative_to(root)) for p in root.rglob('*') if p.is_file())


def survey_item(survey_uuid, prompts=2):
    return IngestItem(
        kind='survey',
        fields={
            'owner': 'alice',
            'campaign_urn': 'urn:campaign:sleep',
            'survey_id': 'evening',
            'epoch_millis': 1700000000000,
            'timezone': 'UTC',
            'location_status': 'unavailable',
            'survey': {'survey_id': 'evening'},
        },
        client_id=survey_uuid,
        related=[
            {'prompt_id': f'q{i}', 'prompt_type': 'number', 'response': str(i)}
            for i in range(prompts)
        ],
    )


class WriterTestMixin:
    """Builds a writer over temporary document and image roots."""

    files_per_directory = 10
    derive_mode = DeriveMode.INLINE

    def setUp(self):
        super().setUp()
        self.document_root = Path(tempfile.mkdtemp()).resolve()
        self.image_root = Path(tempfile.mkdtemp()).resolve()
        self.writer = self._build_writer()

    def tearDown(self):
        shutil.rmtree(self.document_root, ignore_errors=True)
        shutil.rmtree(self.image_root, ignore_errors=True)
        super().tearDown()

    def _build_writer(self, document_depth=2, document_fanout=10):
        document = KindConfig(
            kind='document',
            root=self.document_root,
            depth=document_depth,
            fanout=document_fanout,
            files_per_directory=self.files_per_directory,
        )
        image = KindConfig(
            kind='image',
            root=self.image_root,
            depth=2,
            fanout=10,
            files_per_directory=self.files_per_directory,
            naming_mode=NamingMode.SEQUENTIAL,
            extension='.jpg',
            name_width=3,
            thumbnail_size=(20, 20),
            derive_mode=self.derive_mode,
        )
        return DualResourceIngestWriter({
            'document': BlobShardAllocator(document),
            'image': BlobShardAllocator(image),
        })

    def _document(self, content=b'%PDF-1.4 report', document_id=None):
        return IngestItem(
            kind='document',
            fields={'owner': 'alice', 'name': 'report.pdf', 'extension': 'pdf'},
            blob=SimpleUploadedFile('report.pdf', content),
            client_id=document_id,
        )

    def _image(self, image_id=None, content=None):
        return IngestItem(
            kind='image',
            fields={'owner': 'alice', 'client': 'android'},
            blob=content if content is not None else jpeg_bytes(),
            client_id=image_id or uuid.uuid4(),
        )


class DocumentIngestTests(WriterTestMixin, TestCase):
    """Documents are stored under their record UUID."""

    def test_document_committed_with_file(self):
        """A committed document has its row and its file."""
        outcome = self.writer.ingest_one(self._document())

        self.assertIsInstance(outcome, Committed)
        document = Document.objects.get(pk=outcome.id)
        path = self.document_root / '0' / '0' / str(document.pk)
        self.assertEqual(document.locator, path.as_uri())
        self.assertEqual(outcome.locator, document.locator)
        self.assertEqual(path.read_bytes(), b'%PDF-1.4 report')
        self.assertEqual(document.size_bytes, len(b'%PDF-1.4 report'))

    def test_document_accepts_raw_bytes(self):
        """Blobs given as bytes are written as-is."""
        item = self._document()
        item.blob = b'plain bytes'
        outcome = self.writer.ingest_one(item)

        document = Document.objects.get(pk=outcome.id)
        self.assertEqual(document.size_bytes, len(b'plain bytes'))

    def test_reupload_is_duplicate(self):
        """Re-sending the same id reports a duplicate and stores nothing more."""
        document_id = uuid.uuid4()

        first = self.writer.ingest_one(self._document(document_id=document_id))
        second = self.writer.ingest_one(self._document(b'other', document_id=document_id))

        self.assertIsInstance(first, Committed)
        self.assertEqual(second, Duplicate(document_id))
        self.assertEqual(Document.objects.count(), 1)
        self.assertEqual(stored_files(self.document_root), [f'0/0/{document_id}'])

    def test_blob_write_failure_leaves_nothing(self):
        """A failed blob write rolls back the row and removes the partial file."""
        with patch.object(
            DualResourceIngestWriter, '_write_blob',
            side_effect=FilesystemWriteFailure('disk full')
        ):
            outcome = self.writer.ingest_one(self._document())

        self.assertIsInstance(outcome, Fatal)
        self.assertIsInstance(outcome.error, FilesystemWriteFailure)
        self.assertEqual(Document.objects.count(), 0)
        self.assertEqual(stored_files(self.document_root), [])

    def test_row_update_failure_removes_file(self):
        """A database failure after the file was written removes the file."""
        original_save = Document.save

        def failing_save(instance, *args, **kwargs):
            if kwargs.get('update_fields'):
                raise DatabaseError('connection lost')
            return original_save(instance, *args, **kwargs)

        with patch.object(Document, 'save', failing_save):
            outcome = self.writer.ingest_one(self._document())

        self.assertIsInstance(outcome, Fatal)
        self.assertIsInstance(outcome.error, StructuralFailure)
        self.assertEqual(Document.objects.count(), 0)
        self.assertEqual(stored_files(self.document_root), [])

    def test_unexpected_error_still_removes_file(self):
        """Files are removed whatever interrupts the ingest."""
        with patch.object(
            DualResourceIngestWriter, '_write_blob',
            side_effect=RuntimeError('interrupted')
        ):
            with self.assertRaises(RuntimeError):
                self.writer.ingest_one(self._document())

        self.assertEqual(Document.objects.count(), 0)
        self.assertEqual(stored_files(self.document_root), [])

    def test_store_exhausted_propagates(self):
        """A full tree is not an outcome: it is raised and nothing is kept."""
        self.files_per_directory = 1
        writer = self._build_writer(document_depth=1, document_fanout=1)
        writer.ingest_one(self._document())

        with self.assertLogs('ingest.services.shard_tree', level='CRITICAL'):
            with self.assertRaises(StoreExhausted):
                writer.ingest_one(self._document())

        self.assertEqual(Document.objects.count(), 1)
        self.assertEqual(len(stored_files(self.document_root)), 1)

    def test_missing_blob_is_structural(self):
        """A document without content is rejected before touching storage."""
        item = self._document()
        item.blob = None

        outcome = self.writer.ingest_one(item)

        self.assertIsInstance(outcome.error, StructuralFailure)
        self.assertEqual(Document.objects.count(), 0)

    def test_unknown_kind_is_structural(self):
        outcome = self.writer.ingest_one(IngestItem(kind='video', blob=b'x'))

        self.assertIsInstance(outcome, Fatal)
        self.assertIsInstance(outcome.error, StructuralFailure)

    def test_staged_receives_committed_paths(self):
        """Callers can collect the files of committed items."""
        staged = []
        outcome = self.writer.ingest_one(self._document(), staged=staged)

        self.assertEqual(staged, [self.document_root / '0' / '0' / str(outcome.id)])


class ImageIngestTests(WriterTestMixin, TestCase):
    """Images are stored sequentially with an inline thumbnail."""

    def test_image_and_thumbnail_written(self):
        """The image and its thumbnail appear next to each other."""
        image_id = uuid.uuid4()
        outcome = self.writer.ingest_one(self._image(image_id))

        self.assertEqual(outcome.id, image_id)
        self.assertEqual(stored_files(self.image_root), ['0/0/000-s.jpg', '0/0/000.jpg'])
        image = ImageResource.objects.get(pk=image_id)
        self.assertTrue(image.processed)
        self.assertTrue(image.locator.endswith('/0/0/000.jpg'))
        with Image.open(self.image_root / '0' / '0' / '000-s.jpg') as thumbnail:
            self.assertEqual(thumbnail.size, (20, 20))

    def test_images_get_consecutive_names(self):
        """Each stored image takes the next sequential name."""
        for _ in range(3):
            self.writer.ingest_one(self._image())

        images = [name for name in stored_files(self.image_root) if '-s' not in name]
        self.assertEqual(images, ['0/0/000.jpg', '0/0/001.jpg', '0/0/002.jpg'])

    def test_duplicate_image_touches_no_file(self):
        """A re-uploaded image id writes no second file."""
        image_id = uuid.uuid4()
        self.writer.ingest_one(self._image(image_id))
        outcome = self.writer.ingest_one(self._image(image_id))

        self.assertIsInstance(outcome, Duplicate)
        self.assertEqual(len(stored_files(self.image_root)), 2)

    def test_taken_name_is_skipped(self):
        """A file already on disk under the next name is skipped."""
        leaf = self.image_root / '0' / '0'
        self.writer.allocators['image'].initialize()
        (leaf / '000.jpg').write_bytes(b'written elsewhere')

        with self.assertLogs('ingest.services.allocator', level='WARNING'):
            outcome = self.writer.ingest_one(self._image())

        self.assertTrue(outcome.locator.endswith('/0/0/001.jpg'))
        self.assertEqual((leaf / '000.jpg').read_bytes(), b'written elsewhere')

    def test_undecodable_image_leaves_nothing(self):
        """A blob that cannot be thumbnailed is fatal; image and row are gone."""
        outcome = self.writer.ingest_one(self._image(content=b'not an image'))

        self.assertIsInstance(outcome, Fatal)
        self.assertIsInstance(outcome.error, DerivedArtifactFailure)
        self.assertEqual(ImageResource.objects.count(), 0)
        self.assertEqual(stored_files(self.image_root), [])

    def test_oversized_image_leaves_nothing(self):
        """An image past Pillow's decompression-bomb limit is fatal like any undecodable one."""
        with patch('PIL.Image.MAX_IMAGE_PIXELS', 100):
            outcome = self.writer.ingest_one(self._image())

        self.assertIsInstance(outcome, Fatal)
        self.assertIsInstance(outcome.error, DerivedArtifactFailure)
        self.assertEqual(ImageResource.objects.count(), 0)
        self.assertEqual(stored_files(self.image_root), [])


class DeferredImageIngestTests(WriterTestMixin, TestCase):
    """With deferred derivation the thumbnail is queued after commit."""

    derive_mode = DeriveMode.DEFERRED

    def test_processing_queued_on_commit(self):
        """The image is stored unprocessed and processing is queued."""
        image_id = uuid.uuid4()

        with patch('ingest.tasks.process_image.delay') as delay:
            with self.captureOnCommitCallbacks(execute=True):
                outcome = self.writer.ingest_one(self._image(image_id))

        self.assertIsInstance(outcome, Committed)
        delay.assert_called_once_with(str(image_id))
        self.assertFalse(ImageResource.objects.get(pk=image_id).processed)
        self.assertEqual(stored_files(self.image_root), ['0/0/000.jpg'])

    def test_failed_ingest_queues_nothing(self):
        """Nothing is queued for an ingest that did not commit."""
        with patch('ingest.tasks.process_image.delay') as delay:
            with patch.object(
                DualResourceIngestWriter, '_write_blob',
                side_effect=FilesystemWriteFailure('disk full')
            ):
                with self.captureOnCommitCallbacks(execute=True):
                    self.writer.ingest_one(self._image())

        delay.assert_not_called()


class SurveyIngestTests(WriterTestMixin, TestCase):
    """Surveys are rows only, with their prompt responses."""

    def test_survey_committed_with_prompts(self):
        survey_uuid = uuid.uuid4()
        outcome = self.writer.ingest_one(survey_item(survey_uuid, prompts=3))

        self.assertIsInstance(outcome, Committed)
        self.assertIsNone(outcome.locator)
        survey = SurveyResponse.objects.get(uuid=survey_uuid)
        self.assertEqual(survey.prompt_responses.count(), 3)

    def test_duplicate_survey_adds_no_prompts(self):
        survey_uuid = uuid.uuid4()
        self.writer.ingest_one(survey_item(survey_uuid))
        outcome = self.writer.ingest_one(survey_item(survey_uuid))

        self.assertEqual(outcome, Duplicate(survey_uuid))
        self.assertEqual(SurveyResponse.objects.count(), 1)
        self.assertEqual(PromptResponse.objects.count(), 2)

    def test_survey_with_blob_is_structural(self):
        """Surveys have no storage configured, so a blob is a programming error."""
        item = survey_item(uuid.uuid4())
        item.blob = b'unexpected'

        outcome = self.writer.ingest_one(item)

        self.assertIsInstance(outcome.error, StructuralFailure)
