"""
object_store.py — best-effort image persistence in Supabase Storage.

upload() never raises: any failure returns None and the caller keeps its
local encoded copy.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Optional

import aiohttp

import config
from image_processor import detect_mime

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png":  "png",
    "image/gif":  "gif",
    "image/webp": "webp",
}


class SupabaseObjectStore:

    def __init__(self, url: str, key: str, bucket: str = "scans") -> None:
        self._url = url.rstrip("/")
        self._key = key
        self._bucket = bucket

    def public_url(self, path: str) -> str:
        return f"{self._url}/storage/v1/object/public/{self._bucket}/{path}"

    async def upload(self, image_bytes: bytes, owner: str = "anon") -> Optional[str]:
        if not image_bytes:
            return None

        mime = detect_mime(image_bytes)
        path = f"{owner}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.{_EXTENSIONS[mime]}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self._url}/storage/v1/object/{self._bucket}/{path}",
                    data=image_bytes,
                    headers={
                        "Authorization": f"Bearer {self._key}",
                        "apikey":        self._key,
                        "Content-Type":  mime,
                        "x-upsert":      "false",
                    },
                    timeout=aiohttp.ClientTimeout(total=30),
                ) as resp:
                    if resp.status not in (200, 201):
                        text = await resp.text()
                        logger.warning("Storage upload failed %s: %s", resp.status, text[:200])
                        return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Storage upload error: %s", exc)
            return None

        url = self.public_url(path)
        logger.info("Uploaded scan image → %s", url)
        return url


def get_object_store() -> Optional[SupabaseObjectStore]:
    """The configured store, or None when uploads are disabled."""
    if not (config.SUPABASE_URL and config.SUPABASE_KEY):
        logger.info("Supabase not configured — scan images stay local")
        return None
    return SupabaseObjectStore(config.SUPABASE_URL, config.SUPABASE_KEY, config.SUPABASE_BUCKET)
