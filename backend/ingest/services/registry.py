"""
Ingest Subsystem
================
Composition root: one allocator per configured content kind, the writer and
the batch coordinator built on top of them.

The process-wide instance is cached on the ingest AppConfig and rebuilt when
INGEST_STORAGE changes.
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from django.apps import apps
from django.conf import settings
from django.core.signals import setting_changed
from django.dispatch import receiver

from ..outcomes import IngestOutcome
from .allocator import Allocation, BlobShardAllocator
from .batch import BatchIngestCoordinator
from .config import KindConfig, load_kind_configs
from .duplicates import DuplicateClassifier
from .writer import DualResourceIngestWriter, IngestItem

logger = logging.getLogger(__name__)


class IngestSubsystem:
    """
    Entry point used by the request layer.

    Args:
        kind_configs: KindConfig per content kind that stores blobs
        using: Database alias
        classifier: Overrides the vendor-derived DuplicateClassifier
    """

    def __init__(
        self,
        kind_configs: Dict[str, KindConfig],
        using: str = 'default',
        classifier: Optional[DuplicateClassifier] = None,
    ):
        self.kind_configs = kind_configs
        self.allocators = {
            kind: BlobShardAllocator(config)
            for kind, config in kind_configs.items()
        }
        self.writer = DualResourceIngestWriter(
            self.allocators,
            classifier=classifier,
            using=using,
        )
        self.coordinator = BatchIngestCoordinator(self.writer)

    @classmethod
    def from_settings(cls, using: str = 'default') -> 'IngestSubsystem':
        """
        Build the subsystem from settings.INGEST_STORAGE.

        Raises:
            ConfigurationError: If the storage settings are missing or malformed
        """
        configs = load_kind_configs(getattr(settings, 'INGEST_STORAGE', None))
        logger.info(f"Building ingest subsystem for kinds: {', '.join(configs)}")
        return cls(configs, using=using)

    def allocator(self, kind: str) -> BlobShardAllocator:
        try:
            return self.allocators[kind]
        except KeyError:
            raise ValueError(f"No storage is configured for '{kind}' content") from None

    def allocate(self, kind: str) -> Allocation:
        return self.allocator(kind).allocate()

    def ingest_one(self, item: IngestItem) -> IngestOutcome:
        return self.writer.ingest_one(item)

    def ingest_batch(self, items: Iterable[IngestItem]) -> List[IngestOutcome]:
        return self.coordinator.ingest_batch(items)

    def initialize(self) -> Dict[str, str]:
        """Initialize every allocator, returning the current leaf per kind."""
        return {
            kind: str(allocator.initialize())
            for kind, allocator in self.allocators.items()
        }

    def describe(self) -> List[dict]:
        """Per-kind storage configuration and cursor position."""
        return [
            {
                'kind': kind,
                'root': str(allocator.config.root),
                'naming_mode': allocator.config.naming_mode.value,
                'depth': allocator.config.depth,
                'fanout': allocator.config.fanout,
                'files_per_directory': allocator.config.files_per_directory,
                'current_leaf': (
                    str(allocator.current_leaf) if allocator.current_leaf else None
                ),
            }
            for kind, allocator in self.allocators.items()
        ]


_build_lock = threading.Lock()


def get_subsystem() -> IngestSubsystem:
    """Return the process-wide subsystem, building it on first use."""
    app_config = apps.get_app_config('ingest')
    if app_config.subsystem is None:
        with _build_lock:
            if app_config.subsystem is None:
                app_config.subsystem = IngestSubsystem.from_settings()
    return app_config.subsystem


@receiver(setting_changed)
def reset_subsystem(sender, setting, **kwargs):
    """Drop the cached subsystem when storage settings change (tests)."""
    if setting == 'INGEST_STORAGE':
        apps.get_app_config('ingest').subsystem = None
