"""
Unit Tests for Deferred Image Processing
========================================
Tests cover:
- Thumbnail creation by process_image
- Idempotency and missing images
- Undecodable images
- Sweeping unprocessed images
- The init_storage management command
"""

import shutil
import tempfile
import uuid
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from django.apps import apps
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings

from contracts.models import ImageResource
from ingest.tasks import locator_to_path, process_image, sweep_unprocessed_images, thumbnail_path
from ingest.tests_writer import jpeg_bytes


# Create a temporary media root for tests
TEST_MEDIA_ROOT = tempfile.mkdtemp()

TEST_INGEST_STORAGE = {
    'image': {
        'ROOT': str(Path(TEST_MEDIA_ROOT) / 'images'),
        'DEPTH': 2,
        'FANOUT': 10,
        'NAMING': 'sequential',
        'EXTENSION': '.jpg',
        'THUMBNAIL_SIZE': (16, 16),
        'DERIVE': 'deferred',
    },
}


@override_settings(MEDIA_ROOT=TEST_MEDIA_ROOT, INGEST_STORAGE=TEST_INGEST_STORAGE)
class ProcessImageTaskTests(TestCase):
    """Tests for the process_image and sweep_unprocessed_images tasks."""

    @classmethod
    def tearDownClass(cls):
        """Clean up temporary media directory after all tests."""
        super().tearDownClass()
        shutil.rmtree(TEST_MEDIA_ROOT, ignore_errors=True)

    def setUp(self):
        self.leaf = Path(TEST_INGEST_STORAGE['image']['ROOT']).resolve() / '0' / '0'
        shutil.rmtree(self.leaf.parent.parent, ignore_errors=True)
        self.leaf.mkdir(parents=True)
        apps.get_app_config('ingest').subsystem = None

    def _stored_image(self, name='000.jpg', content=None, processed=False):
        path = self.leaf / name
        path.write_bytes(content if content is not None else jpeg_bytes())
        return ImageResource.objects.create(
            id=uuid.uuid4(),
            owner='alice',
            locator=path.as_uri(),
            size_bytes=path.stat().st_size,
            processed=processed,
        )

    # ===================
    # Helper Tests
    # ===================

    def test_locator_round_trip(self):
        path = self.leaf / '007.jpg'

        self.assertEqual(locator_to_path(path.as_uri()), path)
        self.assertEqual(thumbnail_path(path), self.leaf / '007-s.jpg')

    def test_locator_must_be_file_uri(self):
        with self.assertRaises(ValueError):
            locator_to_path('https://example.org/000.jpg')

    # ===================
    # process_image Tests
    # ===================

    def test_process_image_writes_thumbnail(self):
        """The thumbnail is written next to the image and the image marked processed."""
        image = self._stored_image()

        result = process_image(str(image.pk))

        self.assertTrue(result['success'])
        self.assertTrue((self.leaf / '000-s.jpg').exists())
        image.refresh_from_db()
        self.assertTrue(image.processed)

    def test_process_image_twice_is_harmless(self):
        image = self._stored_image()
        process_image(str(image.pk))

        result = process_image(str(image.pk))

        self.assertTrue(result['skipped'])

    def test_existing_thumbnail_is_kept(self):
        """A thumbnail written by an earlier, interrupted run is reused."""
        image = self._stored_image()
        (self.leaf / '000-s.jpg').write_bytes(b'earlier thumbnail')

        process_image(str(image.pk))

        self.assertEqual((self.leaf / '000-s.jpg').read_bytes(), b'earlier thumbnail')
        image.refresh_from_db()
        self.assertTrue(image.processed)

    def test_process_missing_image(self):
        result = process_image(str(uuid.uuid4()))

        self.assertFalse(result['success'])
        self.assertEqual(result['error'], 'Image not found')

    def test_process_undecodable_image(self):
        """An image that cannot be decoded stays unprocessed without a thumbnail."""
        image = self._stored_image(content=b'not an image')

        result = process_image(str(image.pk))

        self.assertFalse(result['success'])
        self.assertFalse((self.leaf / '000-s.jpg').exists())
        image.refresh_from_db()
        self.assertFalse(image.processed)

    # ===================
    # Sweep Tests
    # ===================

    def test_sweep_queues_unprocessed_images(self):
        pending = self._stored_image('000.jpg')
        self._stored_image('001.jpg', processed=True)

        with patch('ingest.tasks.process_image.delay') as delay:
            result = sweep_unprocessed_images()

        self.assertEqual(result['queued'], 1)
        delay.assert_called_once_with(str(pending.pk))

    def test_sweep_processes_eagerly(self):
        """With eager tasks the sweep leaves no unprocessed image behind."""
        self._stored_image('000.jpg')
        self._stored_image('001.jpg')

        sweep_unprocessed_images()

        self.assertFalse(ImageResource.objects.filter(processed=False).exists())
        self.assertTrue((self.leaf / '001-s.jpg').exists())

    # ===================
    # Management Command Tests
    # ===================

    def test_init_storage(self):
        out = StringIO()
        call_command('init_storage', stdout=out)

        self.assertIn('image: current leaf', out.getvalue())
        self.assertIn('initialized successfully', out.getvalue())

    def test_init_storage_reprocess_images(self):
        self._stored_image()
        out = StringIO()

        call_command('init_storage', '--reprocess-images', stdout=out)

        self.assertIn('Queued 1 images', out.getvalue())
        self.assertFalse(ImageResource.objects.filter(processed=False).exists())

    def test_init_storage_missing_root(self):
        """A missing root fails the command unless roots may be created."""
        shutil.rmtree(self.leaf.parent.parent)

        with self.assertRaises(CommandError):
            call_command('init_storage', stdout=StringIO())

        apps.get_app_config('ingest').subsystem = None
        call_command('init_storage', '--create-roots', stdout=StringIO())
        self.assertTrue(self.leaf.is_dir())
