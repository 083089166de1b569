"""
Unit Tests for the Blob Shard Allocator
=======================================
Tests cover:
- Content-addressed allocation and leaf fullness
- Sequential naming, restart recovery and collisions
- Exhaustion and missing roots
- Concurrent allocation
"""

import shutil
import tempfile
import threading
import uuid
from pathlib import Path

from django.test import SimpleTestCase

from ingest.exceptions import ConfigurationError, StoreExhausted
from ingest.services import BlobShardAllocator, KindConfig, NamingMode


class AllocatorTestMixin:
    """Temporary storage root plus KindConfig helpers."""

    def setUp(self):
        self.root = Path(tempfile.mkdtemp()).resolve()

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _document_config(self, depth=2, fanout=10, files_per_directory=2):
        return KindConfig(
            kind='document',
            root=self.root,
            depth=depth,
            fanout=fanout,
            files_per_directory=files_per_directory,
        )

    def _image_config(self, depth=2, fanout=10, files_per_directory=3):
        return KindConfig(
            kind='image',
            root=self.root,
            depth=depth,
            fanout=fanout,
            files_per_directory=files_per_directory,
            naming_mode=NamingMode.SEQUENTIAL,
            extension='.jpg',
            name_width=3,
        )


class ContentAddressedAllocatorTests(AllocatorTestMixin, SimpleTestCase):
    """Allocation for documents stored under their record UUID."""

    def _store(self, allocator):
        allocation = allocator.allocate()
        path = allocation.path_for(str(uuid.uuid4()))
        path.write_bytes(b'content')
        return allocation

    def test_allocate_returns_first_leaf(self):
        """A fresh root allocates into the first leaf with no file name."""
        allocator = BlobShardAllocator(self._document_config())
        allocation = allocator.allocate()

        self.assertEqual(allocation.directory, self.root / '0' / '0')
        self.assertIsNone(allocation.name)
        self.assertEqual(allocator.current_leaf, self.root / '0' / '0')

    def test_allocate_same_leaf_until_full(self):
        """The leaf is reused until it holds files_per_directory entries."""
        allocator = BlobShardAllocator(self._document_config(files_per_directory=2))

        first = self._store(allocator)
        second = self._store(allocator)
        third = allocator.allocate()

        self.assertEqual(first.directory, second.directory)
        self.assertEqual(third.directory, self.root / '0' / '1')

    def test_foreign_entries_count_toward_fullness(self):
        """Every entry of a content-addressed leaf counts, whatever its name."""
        allocator = BlobShardAllocator(self._document_config(files_per_directory=2))
        leaf = allocator.initialize()
        (leaf / 'notes.txt').write_text('operator notes')
        (leaf / 'lost+found').mkdir()

        self.assertEqual(allocator.allocate().directory, self.root / '0' / '1')

    def test_path_for_sequential_only_accessors(self):
        """Content-addressed allocations have no sequential path."""
        allocation = BlobShardAllocator(self._document_config()).allocate()

        self.assertEqual(allocation.path_for('abc'), allocation.directory / 'abc')
        with self.assertRaises(ValueError):
            allocation.path

    def test_restart_resumes_at_largest_leaf(self):
        """A new allocator picks up where the filesystem says the tree stands."""
        allocator = BlobShardAllocator(self._document_config(files_per_directory=1))
        for _ in range(3):
            self._store(allocator)

        restarted = BlobShardAllocator(self._document_config(files_per_directory=1))
        self.assertEqual(restarted.initialize(), allocator.current_leaf)

    def test_exhausted_tree_raises(self):
        """A full single-leaf tree refuses further allocation."""
        allocator = BlobShardAllocator(
            self._document_config(depth=1, fanout=1, files_per_directory=1)
        )
        self._store(allocator)

        with self.assertLogs('ingest.services.shard_tree', level='CRITICAL'):
            with self.assertRaises(StoreExhausted):
                allocator.allocate()

        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ['0'])

    def test_two_leaf_tree_exhausts_on_third_allocation(self):
        """depth=1, fanout=2: both leaves fill, then allocation fails without new directories."""
        allocator = BlobShardAllocator(
            self._document_config(depth=1, fanout=2, files_per_directory=1)
        )
        first = self._store(allocator)
        second = self._store(allocator)

        with self.assertLogs('ingest.services.shard_tree', level='CRITICAL'):
            with self.assertRaises(StoreExhausted):
                allocator.allocate()

        self.assertEqual((first.directory.name, second.directory.name), ('0', '1'))
        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ['0', '1'])

    def test_missing_root_is_configuration_error(self):
        """A missing root means an incomplete installation."""
        shutil.rmtree(self.root)
        allocator = BlobShardAllocator(self._document_config())

        with self.assertRaises(ConfigurationError):
            allocator.allocate()

    def test_root_that_is_a_file_is_configuration_error(self):
        """The root has to be a directory."""
        shutil.rmtree(self.root)
        self.root.write_text('not a directory')
        try:
            with self.assertRaises(ConfigurationError):
                BlobShardAllocator(self._document_config()).initialize()
        finally:
            self.root.unlink()
            self.root.mkdir()

    def test_leaf_never_moves_backwards(self):
        """Successive allocations only ever move to later leaves."""
        allocator = BlobShardAllocator(self._document_config(files_per_directory=1))
        leaves = [self._store(allocator).directory for _ in range(12)]

        self.assertEqual(leaves, sorted(leaves))
        self.assertEqual(len(set(leaves)), 12)
        self.assertEqual(leaves[-1], self.root / '1' / '1')

    def test_concurrent_allocation_stays_bounded(self):
        """Threads racing the fullness check overfill a leaf by at most their number."""
        threads_count = 8
        per_thread = 10
        limit = 5
        allocator = BlobShardAllocator(
            self._document_config(depth=2, fanout=100, files_per_directory=limit)
        )
        errors = []

        def worker():
            try:
                for _ in range(per_thread):
                    self._store(allocator)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        leaves = [p for p in (self.root / '00').iterdir()]
        total = sum(len(list(leaf.iterdir())) for leaf in leaves)
        self.assertEqual(total, threads_count * per_thread)
        for leaf in leaves:
            self.assertLessEqual(len(list(leaf.iterdir())), limit + threads_count)


class SequentialAllocatorTests(AllocatorTestMixin, SimpleTestCase):
    """Allocation for images stored as NNN.jpg."""

    def _write(self, allocator):
        allocation = allocator.allocate()
        allocation.path.write_bytes(b'jpeg')
        allocator.record_write(allocation)
        return allocation

    def test_first_allocation_is_index_zero(self):
        """A fresh leaf starts at 000.jpg."""
        allocation = BlobShardAllocator(self._image_config()).allocate()

        self.assertEqual(allocation.name, '000')
        self.assertEqual(allocation.path, self.root / '0' / '0' / '000.jpg')
        self.assertEqual(allocation.sibling('-s'), self.root / '0' / '0' / '000-s.jpg')

    def test_counter_advances_on_write(self):
        """The counter moves once a file was created under the name."""
        allocator = BlobShardAllocator(self._image_config())

        self.assertEqual(allocator.allocate().name, '000')
        self.assertEqual(allocator.allocate().name, '000')
        self._write(allocator)
        self.assertEqual(allocator.allocate().name, '001')

    def test_full_leaf_moves_to_next_leaf(self):
        """After files_per_directory files the next leaf starts again at zero."""
        allocator = BlobShardAllocator(self._image_config(files_per_directory=3))
        names = [self._write(allocator).path.relative_to(self.root) for _ in range(4)]

        self.assertEqual(names, [
            Path('0/0/000.jpg'),
            Path('0/0/001.jpg'),
            Path('0/0/002.jpg'),
            Path('0/1/000.jpg'),
        ])

    def test_restart_resumes_after_largest_index(self):
        """On restart the counter resumes after the largest existing file."""
        leaf = self.root / '0' / '0'
        leaf.mkdir(parents=True)
        for name in ('000.jpg', '000-s.jpg', '001.jpg', '001-s.jpg', 'readme.txt'):
            (leaf / name).write_bytes(b'x')

        allocator = BlobShardAllocator(self._image_config(files_per_directory=10))
        self.assertEqual(allocator.allocate().name, '002')

    def test_thumbnails_do_not_count_toward_fullness(self):
        """Derived -s files and foreign files never fill a sequential leaf."""
        leaf = self.root / '0' / '0'
        leaf.mkdir(parents=True)
        (leaf / '000.jpg').write_bytes(b'x')
        for name in ('000-s.jpg', 'a.txt', 'b.txt'):
            (leaf / name).write_bytes(b'x')

        allocator = BlobShardAllocator(self._image_config(files_per_directory=3))
        self.assertEqual(allocator.allocate().directory, leaf)

    def test_collision_skips_taken_name(self):
        """A name found taken on disk is skipped and logged."""
        allocator = BlobShardAllocator(self._image_config(files_per_directory=10))
        allocation = allocator.allocate()
        allocation.path.write_bytes(b'written by another process')

        with self.assertLogs('ingest.services.allocator', level='WARNING'):
            allocator.record_collision(allocation)

        self.assertEqual(allocator.allocate().name, '001')

    def test_stale_write_does_not_move_counter_back(self):
        """Recording an older allocation never rewinds the counter."""
        allocator = BlobShardAllocator(self._image_config(files_per_directory=10))
        first = allocator.allocate()
        self._write(allocator)
        self._write(allocator)

        allocator.record_write(first)
        self.assertEqual(allocator.allocate().name, '002')
