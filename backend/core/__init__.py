"""
Django project package for the ingestion backend.
Loads the Celery app so deferred image processing tasks register on startup.
"""

from .celery import app as celery_app

__all__ = ('celery_app',)
