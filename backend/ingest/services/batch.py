"""
Batch Ingest Coordinator
========================
Ingests a batch of independent items (e.g. all survey responses of one
upload) in a single outer transaction.

Each item runs behind its own savepoint: a duplicate only undoes that item
and the batch carries on. A structural failure aborts the whole batch, since
it means input got past validation that should have rejected it. Any other
fatal item lets the remaining items run, then rolls the whole batch back.
"""

import logging
from typing import Iterable, List

from django.db import DatabaseError, connections, transaction

from ..exceptions import BatchAborted, BatchRolledBack, StructuralFailure
from ..outcomes import Committed, Duplicate, Fatal, IngestOutcome
from .writer import DualResourceIngestWriter, IngestItem, discard_files

logger = logging.getLogger(__name__)


def _is_structural(outcome: IngestOutcome) -> bool:
    return isinstance(outcome, Fatal) and isinstance(outcome.error, StructuralFailure)


def _undo_committed(outcomes: List[IngestOutcome]) -> List[IngestOutcome]:
    """Report items whose insert was rolled back with their batch."""
    return [
        Fatal(BatchRolledBack(f"{outcome.id} was rolled back with its batch"))
        if isinstance(outcome, Committed) else outcome
        for outcome in outcomes
    ]


class BatchIngestCoordinator:
    """
    Args:
        writer: Writer used for every item
        using: Database alias, defaults to the writer's
    """

    def __init__(self, writer: DualResourceIngestWriter, using: str = None):
        self.writer = writer
        self.using = using or writer.using

    def ingest_batch(self, items: Iterable[IngestItem]) -> List[IngestOutcome]:
        """
        Ingest every item and return one outcome per item, in order.

        Raises:
            BatchAborted: If an item failed structurally; nothing from the
                batch is kept
            StoreExhausted: If a shard tree ran out of capacity
        """
        items = list(items)
        logger.info(f"Ingesting batch of {len(items)} items")
        if connections[self.using].features.uses_savepoints:
            return self._ingest_with_savepoints(items)
        return self._ingest_per_item(items)

    def _ingest_with_savepoints(self, items: List[IngestItem]) -> List[IngestOutcome]:
        outcomes: List[IngestOutcome] = []
        staged = []
        committed = False
        try:
            with transaction.atomic(using=self.using):
                for index, item in enumerate(items):
                    savepoint = transaction.savepoint(using=self.using)
                    outcome = self.writer.ingest_one(item, staged=staged)
                    outcomes.append(outcome)

                    if _is_structural(outcome):
                        logger.error(
                            f"Aborting batch at item {index}: {outcome.error}"
                        )
                        raise BatchAborted(index, outcome.error, _undo_committed(outcomes))

                    if isinstance(outcome, Committed):
                        transaction.savepoint_commit(savepoint, using=self.using)
                    else:
                        transaction.savepoint_rollback(savepoint, using=self.using)

                failed = any(isinstance(outcome, Fatal) for outcome in outcomes)
                if failed:
                    transaction.set_rollback(True, using=self.using)
            committed = not failed

        except DatabaseError as e:
            logger.error(f"Batch transaction failed: {e}", exc_info=True)
            failure = StructuralFailure(f"Batch transaction failed: {e}")
            raise BatchAborted(len(outcomes), failure, _undo_committed(outcomes)) from e

        finally:
            if not committed:
                discard_files(staged)

        if not committed:
            logger.warning("Batch rolled back because at least one item failed")
            return _undo_committed(outcomes)

        duplicates = sum(1 for outcome in outcomes if isinstance(outcome, Duplicate))
        logger.info(
            f"Batch committed: {len(outcomes) - duplicates} stored, "
            f"{duplicates} duplicates"
        )
        return outcomes

    def _ingest_per_item(self, items: List[IngestItem]) -> List[IngestOutcome]:
        """Fallback for databases without savepoints: one transaction per item."""
        outcomes: List[IngestOutcome] = []
        for index, item in enumerate(items):
            outcome = self.writer.ingest_one(item)
            outcomes.append(outcome)
            if _is_structural(outcome):
                logger.error(
                    f"Aborting batch at item {index}: {outcome.error}; "
                    f"{index} earlier items stay committed"
                )
                raise BatchAborted(index, outcome.error, outcomes)
        return outcomes
