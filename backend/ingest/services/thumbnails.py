"""
Thumbnail rendering for uploaded images, delegated to Pillow.
"""

import logging
from pathlib import Path
from typing import BinaryIO, Tuple

from PIL import Image, UnidentifiedImageError

from ..exceptions import DerivedArtifactFailure

logger = logging.getLogger(__name__)


THUMBNAIL_SUFFIX = '-s'


def render_thumbnail(source: Path, target: BinaryIO, size: Tuple[int, int]) -> None:
    """
    Scale the image at source to size and write it to target as JPEG.

    Raises:
        DerivedArtifactFailure: If the source cannot be decoded or the
            thumbnail cannot be encoded
    """
    try:
        with Image.open(source) as original:
            scaled = original.convert('RGB').resize(size)
            scaled.save(target, format='JPEG')
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DerivedArtifactFailure(
            f"Could not create a thumbnail from {source}: {e}"
        ) from e
