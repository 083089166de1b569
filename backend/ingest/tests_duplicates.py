"""
Unit Tests for Duplicate Classification
=======================================
Tests cover:
- Per-vendor uniqueness codes carried by driver exceptions
- Integrity errors that are not duplicates
- Unknown vendors and non-integrity errors
"""

import sqlite3

from django.db import IntegrityError, OperationalError
from django.test import SimpleTestCase

from ingest.services import DuplicateClassifier, Verdict
from ingest.services.duplicates import MYSQL_DUPLICATE_ENTRY, POSTGRES_UNIQUE_VIOLATION


class Psycopg2Error(Exception):
    """Stand-in for a psycopg2 error, which exposes pgcode."""

    def __init__(self, pgcode):
        super().__init__('driver error')
        self.pgcode = pgcode


class Psycopg3Error(Exception):
    """Stand-in for a psycopg 3 error, which exposes sqlstate."""

    def __init__(self, sqlstate):
        super().__init__('driver error')
        self.sqlstate = sqlstate


class SqliteError(Exception):
    def __init__(self, code):
        super().__init__('driver error')
        self.sqlite_errorcode = code


def wrapped(driver_error, message='insert failed'):
    """An IntegrityError wrapping a driver error, the way Django raises it."""
    error = IntegrityError(message)
    error.__cause__ = driver_error
    return error


class DuplicateClassifierTests(SimpleTestCase):
    """Tests for DuplicateClassifier."""

    # ===================
    # PostgreSQL Tests
    # ===================

    def test_postgres_unique_violation_pgcode(self):
        """psycopg2 unique_violation is a duplicate."""
        classifier = DuplicateClassifier('postgresql')
        error = wrapped(Psycopg2Error(POSTGRES_UNIQUE_VIOLATION))

        self.assertEqual(classifier.classify(error), Verdict.DUPLICATE)

    def test_postgres_unique_violation_sqlstate(self):
        """psycopg 3 unique_violation is a duplicate."""
        classifier = DuplicateClassifier('postgresql')

        self.assertTrue(classifier.is_duplicate(wrapped(Psycopg3Error('23505'))))

    def test_postgres_foreign_key_violation_is_fatal(self):
        """Other integrity violations are fatal."""
        classifier = DuplicateClassifier('postgresql')

        self.assertEqual(classifier.classify(wrapped(Psycopg2Error('23503'))), Verdict.FATAL)

    # ===================
    # MySQL Tests
    # ===================

    def test_mysql_duplicate_entry(self):
        """MySQL error 1062 is a duplicate."""
        classifier = DuplicateClassifier('mysql')
        driver_error = Exception(MYSQL_DUPLICATE_ENTRY, "Duplicate entry 'x' for key 'uuid'")

        self.assertTrue(classifier.is_duplicate(wrapped(driver_error)))

    def test_mysql_foreign_key_error_is_fatal(self):
        """MySQL error 1452 (foreign key) is fatal."""
        classifier = DuplicateClassifier('mysql')
        driver_error = Exception(1452, 'Cannot add or update a child row')

        self.assertFalse(classifier.is_duplicate(wrapped(driver_error)))

    # ===================
    # SQLite Tests
    # ===================

    def test_sqlite_unique_and_primary_key(self):
        """Both UNIQUE and PRIMARY KEY constraint codes are duplicates."""
        classifier = DuplicateClassifier('sqlite')

        for code in (sqlite3.SQLITE_CONSTRAINT_UNIQUE, sqlite3.SQLITE_CONSTRAINT_PRIMARYKEY):
            with self.subTest(code=code):
                self.assertTrue(classifier.is_duplicate(wrapped(SqliteError(code))))

    def test_sqlite_not_null_is_fatal(self):
        """A NOT NULL failure is fatal."""
        classifier = DuplicateClassifier('sqlite')
        error = wrapped(SqliteError(sqlite3.SQLITE_CONSTRAINT_NOTNULL))

        self.assertEqual(classifier.classify(error), Verdict.FATAL)

    # ===================
    # General Tests
    # ===================

    def test_message_text_is_never_inspected(self):
        """A duplicate-looking message without a driver code is fatal."""
        classifier = DuplicateClassifier('sqlite')
        error = IntegrityError('UNIQUE constraint failed: contracts_surveyresponse.uuid')

        self.assertEqual(classifier.classify(error), Verdict.FATAL)

    def test_non_integrity_error_is_fatal(self):
        """Only IntegrityError can be a duplicate."""
        classifier = DuplicateClassifier('postgresql')
        error = OperationalError('connection lost')
        error.__cause__ = Psycopg2Error(POSTGRES_UNIQUE_VIOLATION)

        self.assertEqual(classifier.classify(error), Verdict.FATAL)

    def test_unknown_vendor_treats_everything_as_fatal(self):
        """Without an adapter nothing is ever a duplicate."""
        with self.assertLogs('ingest.services.duplicates', level='WARNING'):
            classifier = DuplicateClassifier('oracle')

        self.assertFalse(classifier.is_duplicate(wrapped(Psycopg2Error(POSTGRES_UNIQUE_VIOLATION))))

    def test_for_database_uses_connection_vendor(self):
        """The classifier follows the configured database."""
        classifier = DuplicateClassifier.for_database('default')

        self.assertEqual(classifier.vendor, 'sqlite')
