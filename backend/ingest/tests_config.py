"""
Unit Tests for Storage Configuration
====================================
"""

import shutil
import tempfile
from pathlib import Path

from django.test import SimpleTestCase

from ingest.exceptions import ConfigurationError
from ingest.services import (
    DeriveMode,
    IngestSubsystem,
    NamingMode,
    load_kind_configs,
    parse_kind_config,
)


class ParseKindConfigTests(SimpleTestCase):
    """Tests for parse_kind_config and load_kind_configs."""

    def _options(self, **overrides):
        options = {'ROOT': '/srv/content/documents', 'DEPTH': 3, 'FANOUT': 1000}
        options.update(overrides)
        return options

    def test_defaults(self):
        """Files per directory defaults to the fanout, naming to content-addressed."""
        config = parse_kind_config('document', self._options())

        self.assertEqual(config.root, Path('/srv/content/documents'))
        self.assertEqual(config.files_per_directory, 1000)
        self.assertEqual(config.naming_mode, NamingMode.CONTENT_ADDRESSED)
        self.assertEqual(config.derive_mode, DeriveMode.INLINE)
        self.assertIsNone(config.thumbnail_size)

    def test_numeric_strings_are_accepted(self):
        """Values read from the environment arrive as strings."""
        config = parse_kind_config('document', self._options(DEPTH='2', FANOUT='10'))

        self.assertEqual((config.depth, config.fanout), (2, 10))

    def test_sequential_image_config(self):
        """Sequential naming with a bare extension and thumbnails."""
        config = parse_kind_config('image', self._options(
            NAMING='sequential',
            EXTENSION='jpg',
            THUMBNAIL_SIZE=[150, 150],
            DERIVE='deferred',
        ))

        self.assertTrue(config.is_sequential)
        self.assertEqual(config.extension, '.jpg')
        self.assertEqual(config.thumbnail_size, (150, 150))
        self.assertEqual(config.derive_mode, DeriveMode.DEFERRED)
        self.assertEqual(config.file_width, 3)

    def test_invalid_values_are_rejected(self):
        """Every malformed value is a ConfigurationError."""
        invalid = [
            {'ROOT': ''},
            {'DEPTH': None},
            {'DEPTH': 0},
            {'FANOUT': 'many'},
            {'FANOUT': True},
            {'FILES_PER_DIRECTORY': -1},
            {'NAMING': 'random'},
            {'DERIVE': 'later'},
            {'NAMING': 'sequential'},
            {'NAMING': 'sequential', 'EXTENSION': '.jpg', 'NAME_WIDTH': 2},
            {'NAMING': 'sequential', 'EXTENSION': '.jpg', 'THUMBNAIL_SIZE': (0, 10)},
            {'NAMING': 'sequential', 'EXTENSION': '.jpg', 'THUMBNAIL_SIZE': 'small'},
            {'THUMBNAIL_SIZE': (150, 150)},
        ]
        for overrides in invalid:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigurationError):
                    parse_kind_config('image', self._options(**overrides))

    def test_load_requires_dictionary(self):
        """A missing or empty INGEST_STORAGE refuses to build."""
        for value in (None, {}, ['document']):
            with self.subTest(value=value):
                with self.assertRaises(ConfigurationError):
                    load_kind_configs(value)

    def test_load_parses_every_kind(self):
        configs = load_kind_configs({
            'document': self._options(),
            'image': self._options(NAMING='sequential', EXTENSION='.jpg'),
        })

        self.assertEqual(set(configs), {'document', 'image'})
        self.assertEqual(configs['image'].kind, 'image')


class IngestSubsystemTests(SimpleTestCase):
    """Tests for the IngestSubsystem composition root."""

    def setUp(self):
        self.root = Path(tempfile.mkdtemp()).resolve()
        self.subsystem = IngestSubsystem(load_kind_configs({
            'document': {'ROOT': str(self.root), 'DEPTH': 2, 'FANOUT': 10},
        }))

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_allocate_by_kind(self):
        allocation = self.subsystem.allocate('document')

        self.assertEqual(allocation.directory, self.root / '0' / '0')

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            self.subsystem.allocate('video')

    def test_initialize_and_describe(self):
        """describe reports the current leaf once initialized."""
        self.assertIsNone(self.subsystem.describe()[0]['current_leaf'])

        leaves = self.subsystem.initialize()

        self.assertEqual(leaves, {'document': str(self.root / '0' / '0')})
        description = self.subsystem.describe()[0]
        self.assertEqual(description['naming_mode'], 'content-addressed')
        self.assertEqual(description['current_leaf'], str(self.root / '0' / '0'))
