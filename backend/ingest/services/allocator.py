"""
Blob Shard Allocator
====================
Hands out writable locations in a ShardTree.

Allocation almost always returns the cached current leaf without taking a
lock; the lock is only taken to initialize the cursor and when the leaf is
found full and has to be advanced (check, lock, check again).

The check and the write that follows are not atomic. Writers racing past the
fullness check at the same moment can push a leaf past its limit by at most
the number of concurrent writers.
"""

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .config import KindConfig
from .shard_tree import ShardTree, format_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allocation:
    """A writable directory and, in sequential mode, the file name to use."""
    directory: Path
    name: Optional[str] = None
    extension: str = ''

    @property
    def index(self) -> Optional[int]:
        return int(self.name) if self.name is not None else None

    @property
    def path(self) -> Path:
        """Full path of the sequentially named file."""
        if self.name is None:
            raise ValueError("Content-addressed allocations have no file name")
        return self.directory / f"{self.name}{self.extension}"

    def path_for(self, filename: str) -> Path:
        """Full path of a caller-named file in the allocated directory."""
        return self.directory / filename

    def sibling(self, suffix: str) -> Path:
        """Path of a derived file next to the sequential file, e.g. 000-s.jpg."""
        return self.directory / f"{self.name}{suffix}{self.extension}"


class BlobShardAllocator:
    """
    Allocator for one content kind.

    The cursor is a (leaf, next_index) tuple replaced as a whole under the
    lock, so lock-free readers always see a consistent pair. It only ever
    moves forward; a new process rediscovers it from the filesystem.
    """

    def __init__(self, config: KindConfig, tree: Optional[ShardTree] = None):
        self.config = config
        self.tree = tree or ShardTree(config.root, config.depth, config.fanout)
        self._lock = threading.Lock()
        self._cursor: Optional[Tuple[Path, int]] = None
        if config.is_sequential:
            self._file_pattern = re.compile(
                r'^([0-9]+)' + re.escape(config.extension) + r'$'
            )
        else:
            self._file_pattern = None

    @property
    def kind(self) -> str:
        return self.config.kind

    @property
    def current_leaf(self) -> Optional[Path]:
        cursor = self._cursor
        return cursor[0] if cursor is not None else None

    def _limit(self) -> int:
        return self.config.files_per_directory

    def _first_free_index(self, leaf: Path) -> int:
        if not self.config.is_sequential:
            return 0
        largest = self.tree.largest_numeric_file(leaf, self._file_pattern)
        return 0 if largest is None else largest + 1

    def _is_full(self, cursor: Tuple[Path, int]) -> bool:
        leaf, next_index = cursor
        if self.config.is_sequential and next_index >= self._limit():
            return True
        return self.tree.is_full(leaf, self._limit(), self._file_pattern)

    def _allocation(self, cursor: Tuple[Path, int]) -> Allocation:
        leaf, next_index = cursor
        if not self.config.is_sequential:
            return Allocation(directory=leaf)
        return Allocation(
            directory=leaf,
            name=format_name(next_index, self.config.file_width),
            extension=self.config.extension,
        )

    def initialize(self) -> Path:
        """Discover the current leaf from the filesystem if not done yet."""
        if self._cursor is None:
            with self._lock:
                if self._cursor is None:
                    self.config.validate_root()
                    leaf = self.tree.initialize()
                    self._cursor = (leaf, self._first_free_index(leaf))
                    logger.info(
                        f"Allocator for '{self.kind}' initialized at {leaf}"
                    )
        return self._cursor[0]

    def allocate(self) -> Allocation:
        """
        Return a location for one new file.

        Raises:
            StoreExhausted: If the tree has no capacity left
            ConfigurationError: If the storage root is missing
        """
        self.initialize()

        cursor = self._cursor
        if not self._is_full(cursor):
            return self._allocation(cursor)

        with self._lock:
            cursor = self._cursor
            if self._is_full(cursor):
                leaf = self.tree.advance(cursor[0])
                cursor = (leaf, self._first_free_index(leaf))
                self._cursor = cursor
            return self._allocation(cursor)

    def _move_past(self, allocation: Allocation) -> None:
        with self._lock:
            leaf, next_index = self._cursor
            if allocation.directory == leaf and allocation.index >= next_index:
                self._cursor = (leaf, allocation.index + 1)

    def record_write(self, allocation: Allocation) -> None:
        """Sequential mode: a file was created under the allocated name."""
        if allocation.name is not None:
            self._move_past(allocation)

    def record_collision(self, allocation: Allocation) -> None:
        """Sequential mode: the allocated name was already taken on disk."""
        if allocation.name is None:
            return
        logger.warning(
            f"Sequential name {allocation.path} already exists; skipping it"
        )
        self._move_past(allocation)
