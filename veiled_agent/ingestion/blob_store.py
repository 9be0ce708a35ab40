from __future__ import annotations

import logging
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from veiled_agent.common.logging import log_event

logger = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    """
    Blob fetch or upload failed.
    """


def extract_blob_id(body: Any) -> str:
    """
    Publisher responses are either newly created or already certified.
    """
    if isinstance(body, dict):
        created = body.get("newlyCreated")
        if isinstance(created, dict):
            blob_id = (created.get("blobObject") or {}).get("blobId")
            if blob_id:
                return str(blob_id)
        certified = body.get("alreadyCertified")
        if isinstance(certified, dict) and certified.get("blobId"):
            return str(certified["blobId"])
    raise BlobStoreError("publisher response carries no blob id")


class BlobStore:
    """
    Content-addressed blob storage (aggregator for reads, publisher for writes).
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        aggregator_url: str,
        publisher_url: str,
        timeout_s: float = 20.0,
        epochs: int = 1,
    ) -> None:
        self._http = http
        self._aggregator_url = aggregator_url.rstrip("/")
        self._publisher_url = publisher_url.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._epochs = int(epochs)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _get(self, url: str) -> httpx.Response:
        return await self._http.get(url, timeout=self._timeout_s)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _put(self, url: str, data: bytes) -> httpx.Response:
        return await self._http.put(
            url,
            content=data,
            params={"epochs": self._epochs},
            headers={"Content-Type": "application/octet-stream"},
            timeout=self._timeout_s,
        )

    async def fetch(self, blob_id: str) -> bytes:
        try:
            resp = await self._get(f"{self._aggregator_url}/v1/blobs/{blob_id}")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise BlobStoreError(f"fetch {blob_id} failed: {e}") from e
        if not resp.content:
            raise BlobStoreError(f"blob {blob_id} is empty")
        return resp.content

    async def upload(self, data: bytes) -> str:
        try:
            resp = await self._put(f"{self._publisher_url}/v1/blobs", data)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise BlobStoreError(f"upload failed: {e}") from e
        blob_id = extract_blob_id(body)
        log_event(logger, "blob.uploaded", blob_id=blob_id, size_bytes=len(data))
        return blob_id
