"""
Ingest app configuration.

Validates storage configuration on server startup so a misconfigured tree
stops the process before the first upload.
"""

import logging
from django.apps import AppConfig

logger = logging.getLogger(__name__)


class IngestConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'ingest'

    # Built lazily by ingest.services.registry.get_subsystem()
    subsystem = None

    def ready(self):
        """
        Connect the settings listener and, when serving requests, build the
        ingest subsystem eagerly.
        """
        from .services import registry  # noqa: F401 (connects setting_changed)

        # Only build eagerly in the serving process (not in management commands)
        import sys
        if 'runserver' in sys.argv or 'gunicorn' in sys.argv[0]:
            from .services.registry import get_subsystem

            logger.info("Initializing ingest storage on startup...")
            leaves = get_subsystem().initialize()
            for kind, leaf in leaves.items():
                logger.info(f"Ingest storage for '{kind}' ready at {leaf}")
