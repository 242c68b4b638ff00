"""
Image uploads to the remote asset store (Cloudinary).

`data:image/` payloads up to 5 MB are uploaded, existing http(s) URLs are kept,
at most four per item.
Without asset store credentials the payloads are kept as-is; when an upload
fails no images are stored and the surrounding write still goes ahead.
"""

import logging
from typing import List, Optional

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

from config import Settings

logger = logging.getLogger(__name__)

MAX_IMAGES = 4
MAX_IMAGE_BYTES = 5 * 1024 * 1024
TRANSFORMATION = [{"width": 1200, "height": 1200, "crop": "limit"}, {"quality": "auto"}]


def valid_images(images: Optional[List[str]]) -> List[str]:
    kept = []
    for img in (images or [])[:MAX_IMAGES]:
        if not isinstance(img, str):
            continue
        if img.startswith(("http://", "https://")):
            kept.append(img)
            continue
        if not img.startswith("data:image/"):
            continue
        size = len(img) * 3 / 4
        if size > MAX_IMAGE_BYTES:
            logger.info("Image too large (%.1f MB), skipping", size / 1024 / 1024)
            continue
        kept.append(img)
    return kept


def configure(settings: Settings) -> None:
    cloudinary.config(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        secure=True,
    )


def upload_image(image: str) -> str:
    result = cloudinary.uploader.upload(image, transformation=TRANSFORMATION, timeout=30)
    return result["secure_url"]


def store_images(settings: Settings, images: Optional[List[str]]) -> List[str]:
    """Return the URLs (or raw payloads) to persist for the given images."""
    images = valid_images(images)
    if not images:
        return []
    if not settings.assets_enabled:
        return images
    configure(settings)
    try:
        return [img if img.startswith("http") else upload_image(img) for img in images]
    except (CloudinaryError, KeyError):
        logger.exception("Image upload failed; continuing without images")
        return []
