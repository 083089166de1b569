"""
Celery application for the ingestion backend.

Runs deferred image processing (thumbnails) and the periodic sweep for
images whose processing never ran. With CELERY_TASK_ALWAYS_EAGER the tasks
execute in the calling process instead.
"""

import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'core.settings')

app = Celery('survey_ingest')

# CELERY_* Django settings, including the beat schedule
app.config_from_object('django.conf:settings', namespace='CELERY')

# Picks up ingest.tasks
app.autodiscover_tasks()
