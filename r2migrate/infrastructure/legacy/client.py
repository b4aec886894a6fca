"""
Download client for assets still on the legacy host.

Streams the response body into memory chunk by chunk so a cancellation
can interrupt a long download between chunks. 4xx answers are final for
the item (the file is gone or private); 5xx answers and transport errors
are retried with the same fixed budget as part uploads.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional

import httpx

from ...core.errors import SourceFetchError, TransientSourceFetchError
from ...core.migration.cancellation import CancellationToken, retry_async

logger = logging.getLogger(__name__)

FETCH_RETRY_ATTEMPTS = 3
FETCH_RETRY_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class SourcePayload:
    """A downloaded legacy asset."""
    url: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


class LegacySourceClient:
    """Fetches source payloads over HTTP(S)."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        attempts: int = FETCH_RETRY_ATTEMPTS,
        retry_delay_seconds: float = FETCH_RETRY_DELAY_SECONDS,
    ) -> None:
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(follow_redirects=True)
        self._attempts = attempts
        self._retry_delay_seconds = retry_delay_seconds

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def fetch(
        self,
        url: str,
        token: Optional[CancellationToken] = None,
    ) -> SourcePayload:
        """
        Download `url` completely.

        Raises SourceFetchError (message includes the HTTP status) when the
        host answers non-2xx, or after the retry budget is spent.
        """
        payload = await retry_async(
            partial(self._fetch_once, url, token),
            attempts=self._attempts,
            delay_seconds=self._retry_delay_seconds,
            retry_on=(TransientSourceFetchError,),
            token=token,
            description=f"Download of {url}",
        )

        logger.info(
            "Downloaded source asset",
            extra={"url": url, "size_bytes": payload.size}
        )
        return payload

    async def _fetch_once(
        self,
        url: str,
        token: Optional[CancellationToken],
    ) -> SourcePayload:
        try:
            async with self._http.stream("GET", url) as response:
                if response.status_code >= 500:
                    raise TransientSourceFetchError(
                        f"Failed to download source: {response.status_code}",
                        status_code=response.status_code,
                    )
                if not response.is_success:
                    raise SourceFetchError(
                        f"Failed to download source: {response.status_code}",
                        status_code=response.status_code,
                    )

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    if token is not None:
                        token.raise_if_cancelled()
                    buffer.extend(chunk)

                # content-length counts encoded bytes, so only compare identity bodies
                expected = response.headers.get("content-length")
                encoded = response.headers.get("content-encoding", "identity") != "identity"
                if expected and expected.isdigit() and not encoded and int(expected) != len(buffer):
                    raise TransientSourceFetchError(
                        f"Truncated download: got {len(buffer)} of {expected} bytes"
                    )

                content_type = response.headers.get("content-type")
        except httpx.HTTPError as e:
            raise TransientSourceFetchError(f"Failed to download source: {e}")

        if content_type:
            content_type = content_type.split(";", 1)[0].strip() or None

        return SourcePayload(url=url, content=bytes(buffer), content_type=content_type)
