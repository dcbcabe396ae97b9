from __future__ import annotations

import mimetypes
import re
from urllib.parse import unquote, urlparse

import httpx

from transcribe_queue.errors import NetworkError, RateLimited, ServiceError
from transcribe_queue.types import FetchedMedia

DIRECT_MEDIA_PATTERN = re.compile(r"\.(mp3|wav|m4a|mp4|mov|ogg|flac|webm)$", re.IGNORECASE)


def is_direct_media_url(url: str) -> bool:
    path = urlparse(url.strip()).path
    return bool(DIRECT_MEDIA_PATTERN.search(path))


def is_youtube_url(url: str) -> bool:
    netloc = urlparse(url.strip()).netloc.lower()
    return netloc.endswith("youtube.com") or netloc.endswith("youtu.be")


def split_urls(raw: str) -> list[str]:
    """Split user input on whitespace and commas, keeping only http(s) tokens."""
    return [token for token in re.split(r"[\s,]+", raw.strip()) if token.startswith("http")]


class MediaFetcher:
    def __init__(
        self,
        timeout_seconds: float = 120.0,
        max_bytes: int = 512 * 1024 * 1024,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self._http_client = http_client

    def fetch(self, url: str) -> FetchedMedia:
        try:
            if self._http_client is not None:
                data, content_type = self._download(self._http_client, url)
            else:
                with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
                    data, content_type = self._download(client, url)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Download timed out: {url}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Download failed: {exc}") from exc

        if not data:
            raise ServiceError(f"Downloaded media is empty: {url}")

        name = unquote(urlparse(url).path.rsplit("/", 1)[-1]) or "media"
        if not content_type or content_type == "application/octet-stream":
            content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        return FetchedMedia(data=data, mime_type=content_type, name=name)

    def _download(self, client: httpx.Client, url: str) -> tuple[bytes, str]:
        """Stream the body, stopping as soon as it grows past ``max_bytes``."""
        with client.stream("GET", url, timeout=self.timeout_seconds, follow_redirects=True) as response:
            if response.status_code == 429:
                raise RateLimited(f"Media host rate limited the download ({url})")
            if response.status_code >= 400:
                raise ServiceError(f"Download failed ({response.status_code}): {url}")

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > self.max_bytes:
                raise ServiceError(f"Downloaded media exceeds {self.max_bytes} bytes: {url}")

            buffer = bytearray()
            for chunk in response.iter_bytes():
                buffer.extend(chunk)
                if len(buffer) > self.max_bytes:
                    raise ServiceError(f"Downloaded media exceeds {self.max_bytes} bytes: {url}")
            content_type = response.headers.get("content-type", "").split(";")[0].strip()
        return bytes(buffer), content_type
