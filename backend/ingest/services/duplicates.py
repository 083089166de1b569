"""
Duplicate Classification
========================
Decides whether a failed insert means "this content was already ingested".

Only a uniqueness violation reported by the database engine through a stable
error code counts as a duplicate. Everything else, including other integrity
errors such as a broken foreign key, is fatal. Error messages are never
inspected.
"""

import enum
import logging
import sqlite3

from django.db import IntegrityError, connections

logger = logging.getLogger(__name__)


# MySQL / MariaDB ER_DUP_ENTRY
MYSQL_DUPLICATE_ENTRY = 1062

# PostgreSQL SQLSTATE unique_violation
POSTGRES_UNIQUE_VIOLATION = '23505'

SQLITE_UNIQUE_CODES = frozenset({
    sqlite3.SQLITE_CONSTRAINT_UNIQUE,
    sqlite3.SQLITE_CONSTRAINT_PRIMARYKEY,
})


class Verdict(enum.Enum):
    DUPLICATE = 'duplicate'
    FATAL = 'fatal'


def _driver_errors(exc):
    """The Django exception followed by the driver exceptions it wraps."""
    seen = exc
    while seen is not None:
        yield seen
        seen = seen.__cause__


def _mysql_is_duplicate(error) -> bool:
    args = getattr(error, 'args', ())
    return bool(args) and args[0] == MYSQL_DUPLICATE_ENTRY


def _postgresql_is_duplicate(error) -> bool:
    # psycopg2 exposes pgcode, psycopg 3 exposes sqlstate
    code = getattr(error, 'pgcode', None) or getattr(error, 'sqlstate', None)
    return code == POSTGRES_UNIQUE_VIOLATION


def _sqlite_is_duplicate(error) -> bool:
    return getattr(error, 'sqlite_errorcode', None) in SQLITE_UNIQUE_CODES


VENDOR_ADAPTERS = {
    'mysql': _mysql_is_duplicate,
    'postgresql': _postgresql_is_duplicate,
    'sqlite': _sqlite_is_duplicate,
}


class DuplicateClassifier:
    """
    Classify database failures raised while inserting content rows.

    Args:
        vendor: Django database vendor name ('postgresql', 'mysql', 'sqlite')
    """

    def __init__(self, vendor: str):
        self.vendor = vendor
        self._adapter = VENDOR_ADAPTERS.get(vendor)
        if self._adapter is None:
            logger.warning(
                f"No duplicate detection for database vendor '{vendor}'; "
                f"every insert failure will be treated as fatal"
            )

    @classmethod
    def for_database(cls, using: str = 'default') -> 'DuplicateClassifier':
        return cls(connections[using].vendor)

    def classify(self, exc: Exception) -> Verdict:
        if self._adapter is None or not isinstance(exc, IntegrityError):
            return Verdict.FATAL
        if any(self._adapter(error) for error in _driver_errors(exc)):
            return Verdict.DUPLICATE
        return Verdict.FATAL

    def is_duplicate(self, exc: Exception) -> bool:
        return self.classify(exc) is Verdict.DUPLICATE
