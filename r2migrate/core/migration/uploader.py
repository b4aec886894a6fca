"""
Chunked upload orchestration.

Turns one in-memory payload into one object in the store. Small payloads
go through a single presigned PUT; anything above the multipart threshold
is split into fixed 5 MiB parts that are uploaded strictly one after
another:

    initiate -> for n in 1..N: part URL -> PUT bytes -> ETag -> complete

Sequential parts keep memory and connection use flat and make progress
reporting exact. Each part gets a small fixed retry budget; anything that
cannot be recovered (retries spent, cancellation, a failed completion)
aborts the upload once and re-raises to the caller.
"""

import asyncio
import logging
from functools import partial
from typing import Callable, Iterable, Optional, Protocol

import httpx

from ..errors import PartUploadError
from .cancellation import CancellationToken, retry_async
from .models import CompletedPart, PartRange, UploadSession

logger = logging.getLogger(__name__)

CHUNK_SIZE = 5 * 1024 * 1024
MULTIPART_THRESHOLD = 10 * 1024 * 1024
PART_RETRY_ATTEMPTS = 3
PART_RETRY_DELAY_SECONDS = 1.0

ProgressCallback = Callable[[int], None]


class ObjectStore(Protocol):
    """
    What the uploader needs from the object store client.

    Using a protocol keeps this module free of signing and wire details;
    tests and mock mode plug in the same client over a fake transport.
    """

    @property
    def http_client(self) -> httpx.AsyncClient: ...

    def public_url(self, key: str) -> str: ...

    def get_simple_put_url(self, key: str) -> str: ...

    def get_part_upload_url(self, key: str, upload_id: str, part_number: int) -> str: ...

    async def initiate_multipart(
        self,
        key: str,
        content_type: str = ...,
        token: Optional[CancellationToken] = None,
    ) -> str: ...

    async def complete_multipart(
        self,
        key: str,
        upload_id: str,
        parts: Iterable[CompletedPart],
        token: Optional[CancellationToken] = None,
    ) -> None: ...

    async def abort_multipart(self, key: str, upload_id: str) -> bool: ...


def plan_parts(total_size: int, chunk_size: int = CHUNK_SIZE) -> list[PartRange]:
    """
    Split [0, total_size) into consecutive ranges of at most chunk_size.

    Yields ceil(total_size / chunk_size) parts numbered from 1; only the
    last one may be short.
    """
    if total_size < 0:
        raise ValueError("Payload size cannot be negative")
    if chunk_size < 1:
        raise ValueError("Chunk size must be positive")

    return [
        PartRange(
            part_number=index + 1,
            start=start,
            end=min(total_size, start + chunk_size),
        )
        for index, start in enumerate(range(0, total_size, chunk_size))
    ]


class ChunkedUploader:
    """
    Uploads payloads to the object store and returns their public URL.

    One instance can serve many uploads; every call to upload() owns its
    own UploadSession and never shares it.
    """

    def __init__(
        self,
        store: ObjectStore,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        chunk_size: int = CHUNK_SIZE,
        multipart_threshold: int = MULTIPART_THRESHOLD,
        part_attempts: int = PART_RETRY_ATTEMPTS,
        retry_delay_seconds: float = PART_RETRY_DELAY_SECONDS,
    ) -> None:
        self._store = store
        self._http = http_client or store.http_client
        self._chunk_size = chunk_size
        self._multipart_threshold = multipart_threshold
        self._part_attempts = part_attempts
        self._retry_delay_seconds = retry_delay_seconds

    def uses_multipart(self, size: int) -> bool:
        return size > self._multipart_threshold

    async def upload(
        self,
        payload: bytes,
        key: str,
        content_type: str = "application/octet-stream",
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Upload `payload` under `key`, picking the path by size.

        Returns the object's public URL. Raises PartUploadError when the
        retry budget runs out, OperationCancelledError on cancellation,
        ProtocolError when the store rejects initiate/complete.
        """
        token = token or CancellationToken()
        token.raise_if_cancelled()

        if self.uses_multipart(len(payload)):
            await self._upload_multipart(payload, key, content_type, token, progress)
        else:
            await self._upload_simple(payload, key, content_type, token, progress)

        return self._store.public_url(key)

    # -----------------------------------------------------------------------
    # Simple path
    # -----------------------------------------------------------------------

    async def _upload_simple(
        self,
        payload: bytes,
        key: str,
        content_type: str,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> None:
        _emit(progress, 0)
        url = self._store.get_simple_put_url(key)

        await retry_async(
            partial(self._put_object, url, payload, content_type),
            attempts=self._part_attempts,
            delay_seconds=self._retry_delay_seconds,
            retry_on=(PartUploadError,),
            token=token,
            description=f"Upload of {key}",
        )
        _emit(progress, 100)

        logger.info(
            "Uploaded object",
            extra={"key": key, "size_bytes": len(payload)}
        )

    async def _put_object(self, url: str, body: bytes, content_type: str) -> None:
        try:
            response = await self._http.put(
                url, content=body, headers={"content-type": content_type}
            )
        except httpx.HTTPError as e:
            raise PartUploadError(f"Upload failed: {e}")

        if not response.is_success:
            raise PartUploadError(
                f"Upload failed: {response.status_code} - {response.text[:200]}"
            )

    # -----------------------------------------------------------------------
    # Multipart path
    # -----------------------------------------------------------------------

    async def _upload_multipart(
        self,
        payload: bytes,
        key: str,
        content_type: str,
        token: CancellationToken,
        progress: Optional[ProgressCallback],
    ) -> None:
        parts = plan_parts(len(payload), self._chunk_size)
        total = len(parts)

        logger.info(
            "Starting multipart upload",
            extra={"key": key, "size_bytes": len(payload), "parts": total}
        )

        upload_id = await self._store.initiate_multipart(key, content_type, token=token)
        session = UploadSession(destination_key=key, upload_id=upload_id)

        try:
            for part in parts:
                token.raise_if_cancelled()
                _emit(progress, round((part.part_number - 1) / total * 100))

                url = self._store.get_part_upload_url(key, upload_id, part.part_number)
                chunk = payload[part.start:part.end]

                etag = await retry_async(
                    partial(self._put_part, url, chunk, part.part_number),
                    attempts=self._part_attempts,
                    delay_seconds=self._retry_delay_seconds,
                    retry_on=(PartUploadError,),
                    token=token,
                    description=f"Part {part.part_number}/{total} of {key}",
                )
                session.add_part(part.part_number, etag)
                _emit(progress, round(part.part_number / total * 100))

                logger.debug(
                    "Uploaded part",
                    extra={
                        "key": key,
                        "part_number": part.part_number,
                        "total_parts": total,
                        "size_bytes": part.size,
                    }
                )

            await self._store.complete_multipart(
                key, upload_id, session.sorted_parts(), token=token
            )
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(
                "Multipart upload failed, aborting",
                extra={
                    "key": key,
                    "upload_id": upload_id,
                    "parts_uploaded": len(session.parts),
                    "error": str(e) or type(e).__name__,
                }
            )
            await self._store.abort_multipart(key, upload_id)
            raise

    async def _put_part(self, url: str, body: bytes, part_number: int) -> str:
        """PUT one part and return its ETag. A 2xx without an ETag is a failure."""
        try:
            response = await self._http.put(url, content=body)
        except httpx.HTTPError as e:
            raise PartUploadError(
                f"Part {part_number} upload failed: {e}", part_number=part_number
            )

        if not response.is_success:
            raise PartUploadError(
                f"Part {part_number} upload failed: "
                f"{response.status_code} - {response.text[:200]}",
                part_number=part_number,
            )

        etag = response.headers.get("etag", "").strip()
        if not etag:
            raise PartUploadError(
                f"No ETag returned for part {part_number}", part_number=part_number
            )
        return etag


def _emit(progress: Optional[ProgressCallback], percent: int) -> None:
    if progress is not None:
        progress(max(0, min(100, percent)))
