"""
Celery tasks for deferred image processing.

Images ingested with DERIVE = 'deferred' are stored without a thumbnail and
marked unprocessed. These tasks produce the thumbnail afterwards and sweep
up images whose processing never ran.
"""

import logging
from pathlib import Path
from urllib.parse import unquote, urlparse
from uuid import UUID

from celery import shared_task
from django.db import transaction

from contracts.models import ImageResource
from .exceptions import DerivedArtifactFailure
from .services.registry import get_subsystem
from .services.thumbnails import THUMBNAIL_SUFFIX, render_thumbnail

logger = logging.getLogger(__name__)


def locator_to_path(locator: str) -> Path:
    """Convert a file:// locator back to a filesystem path."""
    parsed = urlparse(locator)
    if parsed.scheme != 'file':
        raise ValueError(f"Unsupported locator: {locator}")
    return Path(unquote(parsed.path))


def thumbnail_path(image_path: Path) -> Path:
    return image_path.with_name(f"{image_path.stem}{THUMBNAIL_SUFFIX}{image_path.suffix}")


@shared_task(
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={'max_retries': 3},
    name='ingest.tasks.process_image'
)
def process_image(self, image_id: str) -> dict:
    """
    Write the thumbnail for one image and mark it processed.

    Safe to run more than once: an existing thumbnail is kept.

    Args:
        image_id: UUID string of the ImageResource

    Returns:
        Dictionary with processing results
    """
    image_uuid = UUID(image_id)

    try:
        image = ImageResource.objects.get(id=image_uuid)
    except ImageResource.DoesNotExist:
        logger.error(f"Image {image_uuid} not found")
        return {'success': False, 'error': 'Image not found', 'image_id': image_id}

    if image.processed:
        return {'success': True, 'skipped': True, 'image_id': image_id}

    if not image.locator:
        logger.error(f"Image {image_uuid} has no stored content")
        return {'success': False, 'error': 'Image has no locator', 'image_id': image_id}

    config = get_subsystem().allocator('image').config
    source = locator_to_path(image.locator)
    target = thumbnail_path(source)

    if config.thumbnail_size is None:
        logger.info(f"No thumbnail configured; marking image {image_uuid} processed")
    elif not target.exists():
        try:
            with open(target, 'xb') as handle:
                render_thumbnail(source, handle, config.thumbnail_size)
        except FileExistsError:
            logger.info(f"Thumbnail {target} was written concurrently")
        except DerivedArtifactFailure as e:
            target.unlink(missing_ok=True)
            logger.error(f"Image {image_uuid} could not be processed: {e}")
            return {'success': False, 'error': str(e), 'image_id': image_id}

    with transaction.atomic():
        ImageResource.objects.filter(id=image_uuid).update(processed=True)

    logger.info(f"Processed image {image_uuid}")
    return {'success': True, 'image_id': image_id, 'thumbnail': str(target)}


@shared_task(
    bind=True,
    name='ingest.tasks.sweep_unprocessed_images'
)
def sweep_unprocessed_images(self) -> dict:
    """
    Queue processing for every stored image that is still unprocessed.

    Returns:
        Dictionary with sweep results
    """
    pending = list(ImageResource.objects.filter(
        processed=False,
        locator__isnull=False,
    ).values_list('id', flat=True))

    queued = 0
    for image_id in pending:
        process_image.delay(str(image_id))
        queued += 1

    logger.info(f"Queued {queued} unprocessed images")
    return {'success': True, 'queued': queued}
