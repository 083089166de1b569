"""
Per-item ingest outcomes handed back to the request layer.
"""

from dataclasses import dataclass
from typing import Any, Optional


class IngestOutcome:
    """Base class for the result of ingesting one item."""

    status = None

    def as_dict(self) -> dict:
        raise NotImplementedError


@dataclass(frozen=True)
class Committed(IngestOutcome):
    id: Any
    locator: Optional[str] = None

    status = 'committed'

    def as_dict(self) -> dict:
        return {'status': self.status, 'id': str(self.id), 'locator': self.locator}


@dataclass(frozen=True)
class Duplicate(IngestOutcome):
    client_id: Any

    status = 'duplicate'

    def as_dict(self) -> dict:
        return {'status': self.status, 'id': str(self.client_id)}


@dataclass(frozen=True)
class Fatal(IngestOutcome):
    error: Exception

    status = 'fatal'

    def as_dict(self) -> dict:
        return {
            'status': self.status,
            'error': type(self.error).__name__,
            'message': str(self.error),
        }
