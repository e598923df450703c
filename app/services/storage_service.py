"""
Object storage access for recorded speaking answers
"""

import logging
from typing import Optional, Tuple

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
}


def guess_mime_type(path: str) -> str:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return MIME_TYPES.get(ext, "audio/webm")


class StorageService:
    """Reads uploaded audio from the public storage bucket"""

    def __init__(self, public_base_url: Optional[str] = None, timeout: float = 30.0):
        self.public_base_url = (public_base_url or settings.STORAGE_PUBLIC_URL or "").rstrip("/")
        self.timeout = timeout

    def public_url(self, path: str) -> Optional[str]:
        """Public URL for a storage key, or None when no bucket URL is configured"""
        if not self.public_base_url:
            return None
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.public_base_url}/{path.lstrip('/')}"

    async def fetch_audio(self, path: str) -> Tuple[bytes, str]:
        """
        Download one audio file.

        Args:
            path: Storage key or absolute URL

        Returns:
            (bytes, mime type)

        Raises:
            ValueError: If no public URL can be built for the path
            httpx.HTTPError: If the download fails
        """
        url = self.public_url(path)
        if not url:
            raise ValueError("STORAGE_PUBLIC_URL not configured")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(url)
            response.raise_for_status()
            data = response.content

        logger.info(f"Downloaded audio {path} ({len(data)} bytes)")
        return data, guess_mime_type(path)
