"""
Shard Tree
==========
A bounded-fanout tree of numerically named directories under a storage root.

The filesystem is the only record of where the tree stands: nothing about the
tree is persisted elsewhere, so every answer here comes from a directory
listing.

Layout for depth 3, fanout 1000:

    root/000/000/000/<files>
    root/000/000/001/<files>
    ...
    root/000/001/000/<files>

Names are zero-padded to the width of the largest permitted index, so
lexicographic and numeric order agree.
"""

import logging
import os
import re
from pathlib import Path
from typing import List, Optional, Pattern

from ..exceptions import StoreExhausted

logger = logging.getLogger(__name__)


NUMERIC_NAME = re.compile(r'^[0-9]+$')


def name_width(limit: int) -> int:
    """Number of digits needed to name indexes 0..limit-1."""
    return len(str(max(limit - 1, 0)))


def format_name(index: int, width: int) -> str:
    """Render an index as a zero-padded directory or file name."""
    return str(index).zfill(width)


class ShardTree:
    """
    Filesystem view of one shard tree.

    Args:
        root: Storage root; must already exist
        depth: Number of directory levels below the root
        fanout: Maximum number of numeric subdirectories per directory
    """

    def __init__(self, root, depth: int, fanout: int):
        self.root = Path(root).resolve()
        self.depth = depth
        self.fanout = fanout
        self.width = name_width(fanout)

    def numeric_children(self, path: Path) -> List[str]:
        """Sorted names of the numerically named subdirectories of path."""
        with os.scandir(path) as entries:
            names = [
                entry.name for entry in entries
                if entry.is_dir() and NUMERIC_NAME.match(entry.name)
            ]
        return sorted(names)

    @staticmethod
    def count_entries(path: Path, pattern: Optional[Pattern] = None) -> int:
        """
        Count the entries of a directory.

        Without a pattern every entry counts, whatever its name or type.
        With a pattern only regular files whose name matches count.
        """
        with os.scandir(path) as entries:
            if pattern is None:
                return sum(1 for _ in entries)
            return sum(
                1 for entry in entries
                if pattern.match(entry.name) and entry.is_file()
            )

    @staticmethod
    def largest_numeric_file(path: Path, pattern: Pattern) -> Optional[int]:
        """Largest index among files matching pattern, or None if there are none."""
        largest = None
        with os.scandir(path) as entries:
            for entry in entries:
                match = pattern.match(entry.name)
                if match and entry.is_file():
                    index = int(match.group(1))
                    if largest is None or index > largest:
                        largest = index
        return largest

    def is_full(self, path: Path, limit: int, pattern: Optional[Pattern] = None) -> bool:
        """True iff the directory already holds limit or more counted entries."""
        return self.count_entries(path, pattern) >= limit

    def _make_child(self, parent: Path, index: int) -> Path:
        child = parent / format_name(index, self.width)
        # Another process may have created the same sibling first
        child.mkdir(exist_ok=True)
        return child

    def initialize(self) -> Path:
        """
        Walk down from the root to the current leaf.

        At each level descend into the largest numeric subdirectory, creating
        the first one where a level is empty. A level holding more than
        fanout subdirectories is an inconsistency: step back up and move to
        the next sibling instead.

        Returns:
            Path: The leaf directory reached after depth steps

        Raises:
            StoreExhausted: If stepping back up leaves the root
        """
        current = self.root
        level = 0
        while level < self.depth:
            children = self.numeric_children(current)

            if not children:
                current = self._make_child(current, 0)
                level += 1

            elif len(children) > self.fanout:
                logger.warning(
                    f"Shard directory {current} holds {len(children)} subdirectories, "
                    f"more than the fanout of {self.fanout}; moving to its next sibling"
                )
                level -= 1
                if level < 0:
                    logger.critical(f"Shard tree under {self.root} is full")
                    raise StoreExhausted(f"Shard tree under {self.root} is full")
                sibling = current.parent / format_name(int(current.name) + 1, self.width)
                if sibling.exists():
                    raise StoreExhausted(
                        f"Next sibling {sibling} already exists; the shard tree "
                        f"was modified outside the allocator"
                    )
                sibling.mkdir()
                current = sibling
                level += 1

            else:
                current = current / children[-1]
                level += 1

        logger.info(f"Shard tree under {self.root} starts at leaf {current}")
        return current

    def advance(self, leaf: Path) -> Path:
        """
        Find the next leaf after a full one.

        Climb toward the root one level at a time. At the first ancestor with
        room for another child, create the next-numbered child there and
        recreate first-numbered directories back down to the leaf depth.

        Args:
            leaf: The current, full, leaf directory

        Returns:
            Path: The new leaf

        Raises:
            StoreExhausted: If no ancestor up to the root has room; nothing
                is created in that case
        """
        node = Path(leaf)
        climbed = 0
        while node != self.root:
            try:
                index = int(node.name)
            except ValueError:
                raise StoreExhausted(
                    f"Unexpected non-numeric directory {node} in the shard tree"
                ) from None
            parent = node.parent

            has_room = (
                len(self.numeric_children(parent)) < self.fanout
                and index + 1 < 10 ** self.width
            )
            if has_room:
                new_leaf = self._make_child(parent, index + 1)
                for _ in range(climbed):
                    new_leaf = self._make_child(new_leaf, 0)
                logger.info(f"Shard tree advanced from {leaf} to {new_leaf}")
                return new_leaf

            node = parent
            climbed += 1

        logger.critical(f"Shard tree under {self.root} is full")
        raise StoreExhausted(f"Shard tree under {self.root} is full")
