from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

_STORAGE_PATH_RE = re.compile(r"/storage/v1/object/(?:public/|authenticated/|sign/)?(?P<bucket>[^/]+)/(?P<path>[^?]+)")


class ObjectFetchError(Exception):
    def __init__(self, message: str, *, ref: str) -> None:
        super().__init__(message)
        self.ref = ref


@dataclass(frozen=True)
class FetchedObject:
    content: bytes
    content_type: str | None
    source: str
    size: int


def storage_location(ref: str) -> tuple[str, str] | None:
    """Return ``(bucket, object_path)`` for a storage URL or ``bucket/path`` reference."""
    cleaned = (ref or "").strip()
    if not cleaned:
        return None
    parsed = urlparse(cleaned)
    if parsed.scheme in {"http", "https"}:
        match = _STORAGE_PATH_RE.search(parsed.path)
        if not match:
            return None
        return match.group("bucket"), unquote(match.group("path"))
    if "/" in cleaned and not cleaned.startswith("/"):
        bucket, _, path = cleaned.partition("/")
        return (bucket, path) if path else None
    return None


def object_name(ref: str) -> str:
    path = urlparse(ref).path if "://" in ref else ref
    name = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    return name or ref


class ObjectFetcher:
    def __init__(
        self,
        *,
        storage_url: str = "",
        service_key: str = "",
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage_url = storage_url.rstrip("/")
        self._service_key = service_key
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=8.0),
            transport=self._transport,
            follow_redirects=True,
        )

    async def _get(self, url: str, headers: dict[str, str] | None = None) -> httpx.Response:
        async with self._client() as client:
            response = await client.get(url, headers=headers)
        response.raise_for_status()
        return response

    async def _download_authenticated(self, bucket: str, path: str) -> FetchedObject:
        url = f"{self._storage_url}/storage/v1/object/{bucket}/{path}"
        response = await self._get(
            url,
            headers={"Authorization": f"Bearer {self._service_key}", "apikey": self._service_key},
        )
        return FetchedObject(
            content=response.content,
            content_type=response.headers.get("content-type"),
            source="storage",
            size=len(response.content),
        )

    async def _download_anonymous(self, ref: str) -> FetchedObject:
        response = await self._get(ref)
        return FetchedObject(
            content=response.content,
            content_type=response.headers.get("content-type"),
            source="url",
            size=len(response.content),
        )

    async def download(self, ref: str) -> FetchedObject:
        location = storage_location(ref)
        if location and self._storage_url and self._service_key:
            try:
                return await self._download_authenticated(*location)
            except httpx.HTTPError as exc:
                logger.warning("storage download failed for %s, falling back to URL fetch: %s", object_name(ref), exc)
        if urlparse(ref).scheme not in {"http", "https"}:
            raise ObjectFetchError(f"No way to fetch reference {ref!r}", ref=ref)
        try:
            return await self._download_anonymous(ref)
        except httpx.HTTPError as exc:
            raise ObjectFetchError(f"{type(exc).__name__}: {exc}", ref=ref) from exc
