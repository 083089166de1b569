"""
Unit Tests for the Shard Tree
=============================
Tests cover:
- Name formatting
- Initialization on empty and populated roots
- Advancing to the next leaf
- Exhaustion
- Recovery from over-full levels
"""

import re
import shutil
import tempfile
from pathlib import Path

from django.test import SimpleTestCase

from ingest.exceptions import StoreExhausted
from ingest.services.shard_tree import NUMERIC_NAME, ShardTree, format_name, name_width


class ShardTreeTests(SimpleTestCase):
    """Tests for ShardTree against a temporary storage root."""

    def setUp(self):
        self.root = Path(tempfile.mkdtemp()).resolve()

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _mkdirs(self, *relative):
        for path in relative:
            (self.root / path).mkdir(parents=True, exist_ok=True)

    # ===================
    # Naming Tests
    # ===================

    def test_name_width_covers_largest_index(self):
        """Width is the number of digits of fanout - 1."""
        self.assertEqual(name_width(1), 1)
        self.assertEqual(name_width(10), 1)
        self.assertEqual(name_width(11), 2)
        self.assertEqual(name_width(1000), 3)

    def test_format_name_zero_pads(self):
        """Names are zero-padded so lexicographic order is numeric order."""
        self.assertEqual(format_name(7, 3), '007')
        self.assertEqual(format_name(123, 3), '123')
        self.assertLess(format_name(9, 3), format_name(10, 3))

    def test_numeric_name_pattern(self):
        """Only all-digit names are tree directories."""
        self.assertTrue(NUMERIC_NAME.match('000'))
        self.assertFalse(NUMERIC_NAME.match('tmp'))
        self.assertFalse(NUMERIC_NAME.match('12a'))

    # ===================
    # Initialization Tests
    # ===================

    def test_initialize_empty_root_creates_first_leaf(self):
        """An empty root gets first-numbered directories down to the leaf depth."""
        tree = ShardTree(self.root, depth=3, fanout=100)
        leaf = tree.initialize()

        self.assertEqual(leaf, self.root / '00' / '00' / '00')
        self.assertTrue(leaf.is_dir())

    def test_initialize_descends_into_largest_child(self):
        """Reinitialization resumes at the largest directory on each level."""
        self._mkdirs('00/00', '00/05', '01/02', '01/00')
        tree = ShardTree(self.root, depth=2, fanout=100)

        self.assertEqual(tree.initialize(), self.root / '01' / '02')

    def test_initialize_completes_partial_path(self):
        """A level without children gets its first directory created."""
        self._mkdirs('03')
        tree = ShardTree(self.root, depth=2, fanout=10)

        self.assertEqual(tree.initialize(), self.root / '03' / '0')

    def test_initialize_ignores_foreign_entries(self):
        """Non-numeric directories and stray files never take part."""
        self._mkdirs('00/00', 'tmp', 'zz')
        (self.root / '99').write_text('not a directory')
        tree = ShardTree(self.root, depth=2, fanout=100)

        self.assertEqual(tree.initialize(), self.root / '00' / '00')
        self.assertEqual(tree.numeric_children(self.root), ['00'])

    def test_initialize_is_repeatable(self):
        """Running initialize twice yields the same leaf and creates nothing new."""
        tree = ShardTree(self.root, depth=2, fanout=10)
        first = tree.initialize()
        second = tree.initialize()

        self.assertEqual(first, second)
        self.assertEqual(tree.numeric_children(self.root), ['0'])

    def test_initialize_overfull_level_moves_to_next_sibling(self):
        """A level holding more than fanout children is skipped with a warning."""
        self._mkdirs('0/0', '0/1', '0/2')
        tree = ShardTree(self.root, depth=2, fanout=2)

        with self.assertLogs('ingest.services.shard_tree', level='WARNING') as logs:
            leaf = tree.initialize()

        self.assertEqual(leaf, self.root / '1' / '0')
        self.assertTrue(any('more than the fanout' in line for line in logs.output))

    def test_initialize_overfull_root_is_exhausted(self):
        """An over-full root leaves nowhere to go."""
        self._mkdirs('0', '1', '2')
        tree = ShardTree(self.root, depth=1, fanout=2)

        with self.assertLogs('ingest.services.shard_tree', level='WARNING'):
            with self.assertRaises(StoreExhausted):
                tree.initialize()

    # ===================
    # Advance Tests
    # ===================

    def test_advance_creates_next_sibling(self):
        """A full leaf with room beside it moves to the next sibling."""
        tree = ShardTree(self.root, depth=2, fanout=3)
        leaf = tree.initialize()

        self.assertEqual(tree.advance(leaf), self.root / '0' / '1')

    def test_advance_climbs_when_parent_is_full(self):
        """A full parent sends the tree one level up and back down to a fresh leaf."""
        self._mkdirs('0/0', '0/1', '0/2')
        tree = ShardTree(self.root, depth=2, fanout=3)

        new_leaf = tree.advance(self.root / '0' / '2')

        self.assertEqual(new_leaf, self.root / '1' / '0')
        self.assertTrue(new_leaf.is_dir())

    def test_advance_reuses_sibling_created_concurrently(self):
        """A sibling another process already created is adopted."""
        self._mkdirs('0/0', '0/1')
        tree = ShardTree(self.root, depth=2, fanout=3)

        self.assertEqual(tree.advance(self.root / '0' / '0'), self.root / '0' / '1')

    def test_advance_exhausted_creates_nothing(self):
        """With every level full the tree is exhausted and left untouched."""
        self._mkdirs('0', '1')
        tree = ShardTree(self.root, depth=1, fanout=2)

        with self.assertLogs('ingest.services.shard_tree', level='CRITICAL'):
            with self.assertRaises(StoreExhausted):
                tree.advance(self.root / '1')

        self.assertEqual(tree.numeric_children(self.root), ['0', '1'])

    def test_advance_stops_at_name_width(self):
        """Directory names never grow wider than the tree's width."""
        self._mkdirs('9')
        tree = ShardTree(self.root, depth=1, fanout=10)

        with self.assertLogs('ingest.services.shard_tree', level='CRITICAL'):
            with self.assertRaises(StoreExhausted):
                tree.advance(self.root / '9')

    # ===================
    # Fullness Tests
    # ===================

    def test_count_entries_without_pattern_counts_everything(self):
        """Content-addressed leaves count every entry, foreign ones included."""
        leaf = self.root / '0'
        leaf.mkdir()
        (leaf / 'a').write_bytes(b'1')
        (leaf / 'notes.txt').write_bytes(b'2')
        (leaf / 'sub').mkdir()
        tree = ShardTree(self.root, depth=1, fanout=10)

        self.assertEqual(tree.count_entries(leaf), 3)
        self.assertTrue(tree.is_full(leaf, 3))
        self.assertFalse(tree.is_full(leaf, 4))

    def test_count_entries_with_pattern_counts_matching_files(self):
        """Sequential leaves only count their own numbered files."""
        pattern = re.compile(r'^([0-9]+)\.jpg$')
        leaf = self.root / '0'
        leaf.mkdir()
        for name in ('000.jpg', '001.jpg', '000-s.jpg', 'readme.txt'):
            (leaf / name).write_bytes(b'x')
        tree = ShardTree(self.root, depth=1, fanout=10)

        self.assertEqual(tree.count_entries(leaf, pattern), 2)
        self.assertEqual(tree.largest_numeric_file(leaf, pattern), 1)

    def test_largest_numeric_file_empty(self):
        """An empty leaf has no largest file."""
        leaf = self.root / '0'
        leaf.mkdir()
        tree = ShardTree(self.root, depth=1, fanout=10)

        self.assertIsNone(tree.largest_numeric_file(leaf, re.compile(r'^([0-9]+)\.jpg$')))
