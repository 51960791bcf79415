"""
image_processor.py — shrink a captured frame before it goes over the network.

The encode is best-effort: preprocess() never blocks the scan for longer than
PREPROCESS_TIMEOUT and falls back to the untouched frame whenever the encode
is slow or fails.
"""
from __future__ import annotations

import asyncio
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

import config
from timeouts import with_deadline

logger = logging.getLogger(__name__)


def detect_mime(image_bytes: bytes) -> str:
    """Sniff the image type from magic bytes (default jpeg)."""
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] == b"GIF8":
        return "image/gif"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def compress_image(
    raw: bytes,
    max_edge: Optional[int] = None,
    quality: Optional[int] = None,
) -> bytes:
    """
    Downscale so the longest edge is at most `max_edge` and re-encode as JPEG.
    Returns `raw` unchanged if it can't be decoded.
    """
    max_edge = max_edge or config.IMAGE_MAX_EDGE
    quality = quality or config.IMAGE_QUALITY
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("Frame not decodable (%s) — sending original", exc)
        return raw

    # Flatten transparency onto white (JPEG has no alpha)
    if img.mode in ("RGBA", "LA", "P"):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[3])
        img = background
    elif img.mode != "RGB":
        img = img.convert("RGB")

    if max(img.size) > max_edge:
        img.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality, optimize=True)
    out = buffer.getvalue()
    logger.debug(
        "Compressed frame %.0fKB -> %.0fKB (%dx%d, q=%d)",
        len(raw) / 1024, len(out) / 1024, img.width, img.height, quality,
    )
    return out


async def preprocess(raw: bytes, timeout: Optional[float] = None) -> bytes:
    """
    Compress `raw` off the event loop, racing a fixed timer.
    Whatever happens, the caller gets bytes it can send: the compressed frame
    if it was ready in time, the original otherwise.
    """
    timeout = config.PREPROCESS_TIMEOUT if timeout is None else timeout
    return await with_deadline(
        asyncio.to_thread(compress_image, raw),
        timeout,
        fallback=raw,
        label="preprocess",
    )
