"""
Management command to initialize the blob storage trees.

Usage:
    python manage.py init_storage
    python manage.py init_storage --create-roots       # Create missing storage roots
    python manage.py init_storage --reprocess-images   # Queue unprocessed images
"""

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from ingest.exceptions import ConfigurationError, StoreExhausted
from ingest.services import get_subsystem, load_kind_configs
from ingest.tasks import sweep_unprocessed_images


class Command(BaseCommand):
    help = 'Validate storage configuration and position each allocator on its current leaf'

    def add_arguments(self, parser):
        parser.add_argument(
            '--create-roots',
            action='store_true',
            help='Create storage root directories that do not exist yet',
        )
        parser.add_argument(
            '--reprocess-images',
            action='store_true',
            help='Queue thumbnail processing for every unprocessed image',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.NOTICE('Initializing ingest storage...'))

        try:
            if options['create_roots']:
                configs = load_kind_configs(getattr(settings, 'INGEST_STORAGE', None))
                for kind, config in configs.items():
                    config.root.mkdir(parents=True, exist_ok=True)
                    self.stdout.write(f'{kind}: root {config.root}')

            subsystem = get_subsystem()
            leaves = subsystem.initialize()
        except (ConfigurationError, StoreExhausted) as e:
            self.stdout.write(self.style.ERROR(f'Failed to initialize storage: {e}'))
            raise CommandError(str(e)) from e

        for kind, leaf in leaves.items():
            self.stdout.write(f'{kind}: current leaf {leaf}')

        self.stdout.write(self.style.SUCCESS('Ingest storage initialized successfully'))

        if options['reprocess_images']:
            if 'image' not in subsystem.allocators:
                self.stdout.write(self.style.WARNING('No image storage is configured'))
                return

            self.stdout.write(self.style.NOTICE('Queueing unprocessed images...'))
            result = sweep_unprocessed_images()
            self.stdout.write(
                self.style.SUCCESS(f"Queued {result['queued']} images for processing")
            )
