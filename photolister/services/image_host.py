"""
Public hosting for inline listing photos.

eBay only accepts image URLs, so data-URL photos are uploaded to imgBB first.
Uploads run concurrently under a semaphore; a failed upload is dropped rather
than failing the publish.
"""

import asyncio
import logging

from photolister.errors import ImageHostError
from photolister.services import http, settings
from photolister.services.ebay_service import strip_data_url

logger = logging.getLogger("photolister.images")

PLACEHOLDER_IMAGE_URL = "https://i.ibb.co/placeholder/no-image-available.jpg"


def is_hosted(image: str) -> bool:
    return image.startswith(("http://", "https://"))


async def upload_image(image: str) -> str:
    """Upload one base64 image and return its direct URL."""
    if not settings.imgbb_configured():
        raise ImageHostError("IMGBB_API_KEY is not configured")
    try:
        async with http.client() as client:
            resp = await client.post(
                settings.IMGBB_UPLOAD_URL,
                data={"key": settings.IMGBB_API_KEY, "image": strip_data_url(image)},
            )
    except Exception as e:
        raise ImageHostError(f"imgBB upload failed: {e}") from e

    if resp.status_code != 200:
        raise ImageHostError(f"imgBB returned {resp.status_code}: {resp.text}")
    body = resp.json()
    if not body.get("success"):
        raise ImageHostError(f"imgBB rejected the upload: {body}")
    url = body.get("data", {}).get("display_url") or body.get("data", {}).get("url")
    if not url:
        raise ImageHostError("imgBB response carried no URL")
    return url


async def host_images(images: list[str], concurrency: int | None = None) -> tuple[list[str], list[str]]:
    """
    Resolve every image reference to a public URL, preserving order.

    Returns ``(urls, warnings)``. URLs pass through untouched; failed uploads
    are dropped; if nothing survives, a single placeholder URL is returned.
    """
    semaphore = asyncio.Semaphore(concurrency or settings.IMAGE_UPLOAD_CONCURRENCY)

    async def resolve(image: str) -> str:
        if is_hosted(image):
            return image
        async with semaphore:
            return await upload_image(image)

    results = await asyncio.gather(*(resolve(img) for img in images), return_exceptions=True)

    urls = []
    warnings = []
    for index, result in enumerate(results):
        if isinstance(result, Exception):
            logger.warning("Dropping image %d: %s", index + 1, result)
            continue
        urls.append(result)

    if not urls:
        logger.warning("No image could be hosted, using placeholder image")
        warnings.append("No photo could be uploaded; a placeholder image was used.")
        urls = [PLACEHOLDER_IMAGE_URL]
    elif len(urls) < len(images):
        warnings.append(f"{len(images) - len(urls)} of {len(images)} photos could not be uploaded.")
    return urls, warnings
