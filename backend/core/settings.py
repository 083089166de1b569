"""
Django settings for the ingestion backend.

Values come from environment variables with development defaults.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-only-insecure-key')

DEBUG = os.environ.get('DJANGO_DEBUG', 'true').lower() == 'true'

ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',')

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'contracts',
    'ingest',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'core.urls'

WSGI_APPLICATION = 'core.wsgi.application'


def _database_from_env():
    """Build the default database entry from DB_* environment variables."""
    engine = os.environ.get('DB_ENGINE', 'sqlite')
    if engine == 'sqlite':
        return {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.environ.get('DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        }
    backends = {
        'postgres': 'django.db.backends.postgresql',
        'mysql': 'django.db.backends.mysql',
    }
    return {
        'ENGINE': backends[engine],
        'NAME': os.environ.get('DB_NAME', 'ingest'),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', ''),
    }


DATABASES = {
    'default': _database_from_env(),
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'

MEDIA_ROOT = Path(os.environ.get('MEDIA_ROOT', BASE_DIR / 'media'))
MEDIA_URL = '/media/'

# Maximum accepted upload size in bytes
FILE_UPLOAD_MAX_SIZE = int(os.environ.get('FILE_UPLOAD_MAX_SIZE', 10 * 1024 * 1024))

# Per content kind storage trees. Read once when the ingest subsystem is built.
INGEST_STORAGE = {
    'document': {
        'ROOT': os.environ.get('INGEST_DOCUMENT_ROOT', str(MEDIA_ROOT / 'documents')),
        'DEPTH': int(os.environ.get('INGEST_DOCUMENT_DEPTH', 3)),
        'FANOUT': int(os.environ.get('INGEST_DOCUMENT_FANOUT', 1000)),
        'FILES_PER_DIRECTORY': int(os.environ.get('INGEST_DOCUMENT_FILES', 1000)),
        'NAMING': 'content-addressed',
    },
    'image': {
        'ROOT': os.environ.get('INGEST_IMAGE_ROOT', str(MEDIA_ROOT / 'images')),
        'DEPTH': int(os.environ.get('INGEST_IMAGE_DEPTH', 3)),
        'FANOUT': int(os.environ.get('INGEST_IMAGE_FANOUT', 1000)),
        'FILES_PER_DIRECTORY': int(os.environ.get('INGEST_IMAGE_FILES', 1000)),
        'NAMING': 'sequential',
        'EXTENSION': '.jpg',
        'THUMBNAIL_SIZE': (150, 150),
        'DERIVE': os.environ.get('INGEST_IMAGE_DERIVE', 'inline'),
    },
}

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': ['rest_framework.renderers.JSONRenderer'],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
        'rest_framework.parsers.MultiPartParser',
        'rest_framework.parsers.FormParser',
    ],
    'UNAUTHENTICATED_USER': None,
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
}

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_TASK_ALWAYS_EAGER = os.environ.get('CELERY_TASK_ALWAYS_EAGER', 'true').lower() == 'true'
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']

IMAGE_PROCESSING_SWEEP_SECONDS = int(os.environ.get('IMAGE_PROCESSING_SWEEP_SECONDS', 30))

CELERY_BEAT_SCHEDULE = {
    'sweep-unprocessed-images': {
        'task': 'ingest.tasks.sweep_unprocessed_images',
        'schedule': IMAGE_PROCESSING_SWEEP_SECONDS,
    },
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'ingest': {
            'handlers': ['console'],
            'level': os.environ.get('INGEST_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
