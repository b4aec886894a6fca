"""
Object store client for the migration engine.

Talks to Cloudflare R2 (or any S3-compatible store) over plain HTTPS
with our own SigV4 signing. Two kinds of calls:

- Presigned URLs (part URL, simple PUT URL): pure signing, no network.
  The uploader PUTs the bytes to them directly.
- Header-signed calls (initiate, complete, abort, delete): issued here
  through an httpx.AsyncClient.

Mock mode swaps the transport for an in-memory S3 emulator (see
mock.py), so the full signing and wire format still run locally.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import httpx

from ...core.errors import ConfigurationError, ProtocolError
from ...core.migration.cancellation import CancellationToken
from ...core.migration.models import CompletedPart
from .multipart_xml import build_complete_multipart_body, parse_upload_id
from .signing import (
    DEFAULT_EXPIRES_SECONDS,
    DEFAULT_REGION,
    EMPTY_PAYLOAD_HASH,
    Credentials,
    Endpoint,
    SignedRequest,
    presign_url,
    sha256_hex,
    sign_request,
)

logger = logging.getLogger(__name__)


@dataclass
class StorageConfig:
    """
    Configuration for R2/S3-compatible storage.

    public_url is the base that uploaded objects are served from; the
    public URL of a key is always public_url + "/" + key.
    """
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    endpoint_url: str
    public_url: str
    region: str = DEFAULT_REGION  # R2 uses 'auto' for region
    presign_expires_seconds: int = DEFAULT_EXPIRES_SECONDS

    def missing_fields(self) -> list[str]:
        required = {
            "access_key_id": self.access_key_id,
            "secret_access_key": self.secret_access_key,
            "bucket_name": self.bucket_name,
            "endpoint_url": self.endpoint_url,
            "public_url": self.public_url,
        }
        return [name for name, value in required.items() if not value]

    def validate(self) -> None:
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Object store not configured, missing: {', '.join(missing)}"
            )


class ObjectStoreClient:
    """
    The multipart primitives plus the simple presigned PUT.

    Does not retry anything itself: initiate/complete failures are fatal
    for the call, abort is best-effort, and part retries belong to the
    uploader.
    """

    def __init__(
        self,
        config: StorageConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        owns_client: Optional[bool] = None,
    ) -> None:
        config.validate()
        self._config = config
        self._credentials = Credentials(
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
        )
        self._endpoint = Endpoint.parse(config.endpoint_url)
        self._owns_client = http_client is None if owns_client is None else owns_client
        self._http = http_client or httpx.AsyncClient()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        logger.info(
            "Initialized object store client",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.endpoint_url,
            }
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """The client used for store calls; the uploader PUTs through it too."""
        return self._http

    @property
    def bucket_name(self) -> str:
        return self._config.bucket_name

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "ObjectStoreClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # -----------------------------------------------------------------------
    # Keys and URLs
    # -----------------------------------------------------------------------

    def object_path(self, key: str) -> str:
        """Path-style object path: /{bucket}/{key}."""
        key = key.lstrip("/")
        if not key:
            raise ValueError("Object key cannot be empty")
        return f"/{self._config.bucket_name}/{key}"

    def public_url(self, key: str) -> str:
        return f"{self._config.public_url.rstrip('/')}/{key.lstrip('/')}"

    def get_part_upload_url(self, key: str, upload_id: str, part_number: int) -> str:
        """Presigned PUT URL scoped to one part of one upload."""
        if part_number < 1:
            raise ValueError("Part numbers start at 1")
        return self._presign(
            "PUT",
            key,
            {"partNumber": str(part_number), "uploadId": upload_id},
        )

    def get_simple_put_url(self, key: str) -> str:
        """Presigned PUT URL for a payload below the multipart threshold."""
        return self._presign("PUT", key)

    # -----------------------------------------------------------------------
    # Signed calls
    # -----------------------------------------------------------------------

    async def initiate_multipart(
        self,
        key: str,
        content_type: str = "application/octet-stream",
        token: Optional[CancellationToken] = None,
    ) -> str:
        """Start a multipart upload and return its uploadId."""
        signed = self._sign(
            "POST",
            key,
            query={"uploads": ""},
            headers={"content-type": content_type},
        )
        response = await self._send(signed, token=token)
        self._raise_for_status(response, "initiate multipart upload")

        upload_id = parse_upload_id(response.text)
        logger.info(
            "Multipart upload initiated",
            extra={"key": key, "upload_id": upload_id}
        )
        return upload_id

    async def complete_multipart(
        self,
        key: str,
        upload_id: str,
        parts: Iterable[CompletedPart],
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Stitch the uploaded parts together, in part-number order."""
        body = build_complete_multipart_body(parts)
        signed = self._sign(
            "POST",
            key,
            query={"uploadId": upload_id},
            headers={"content-type": "application/xml"},
            payload_hash=sha256_hex(body),
        )
        response = await self._send(signed, content=body, token=token)
        self._raise_for_status(response, "complete multipart upload")

        logger.info(
            "Multipart upload completed",
            extra={"key": key, "upload_id": upload_id}
        )

    async def abort_multipart(self, key: str, upload_id: str) -> bool:
        """
        Abandon a multipart upload so the store can drop its parts.

        Best effort: failures are logged and reported through the return
        value, never raised. Not cancellable, since it is the cleanup
        that runs after a cancellation.
        """
        try:
            signed = self._sign("DELETE", key, query={"uploadId": upload_id})
            response = await self._send(signed)
            self._raise_for_status(response, "abort multipart upload")
        except Exception as e:
            logger.warning(
                "Failed to abort multipart upload",
                extra={"key": key, "upload_id": upload_id, "error": str(e)}
            )
            return False

        logger.info(
            "Multipart upload aborted",
            extra={"key": key, "upload_id": upload_id}
        )
        return True

    async def delete_object(
        self,
        key: str,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Delete one object."""
        signed = self._sign("DELETE", key)
        response = await self._send(signed, token=token)
        self._raise_for_status(response, "delete object")
        logger.info("Deleted object", extra={"key": key})

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    def _presign(self, method: str, key: str, query: Optional[dict] = None) -> str:
        return presign_url(
            method=method,
            endpoint=self._endpoint,
            path=self.object_path(key),
            credentials=self._credentials,
            query=query,
            expires_seconds=self._config.presign_expires_seconds,
            now=self._clock(),
            region=self._config.region,
        )

    def _sign(
        self,
        method: str,
        key: str,
        query: Optional[dict] = None,
        headers: Optional[dict] = None,
        payload_hash: str = EMPTY_PAYLOAD_HASH,
    ) -> SignedRequest:
        return sign_request(
            method=method,
            endpoint=self._endpoint,
            path=self.object_path(key),
            credentials=self._credentials,
            query=query,
            headers=headers,
            payload_hash=payload_hash,
            now=self._clock(),
            region=self._config.region,
        )

    async def _send(
        self,
        signed: SignedRequest,
        content: Optional[bytes] = None,
        token: Optional[CancellationToken] = None,
    ) -> httpx.Response:
        request = self._http.request(
            signed.method,
            signed.url,
            headers=signed.headers,
            content=content,
        )
        try:
            if token is not None:
                return await token.run(request)
            return await request
        except httpx.HTTPError as e:
            raise ProtocolError(f"{signed.method} {signed.url.split('?')[0]} failed: {e}")

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        raise ProtocolError(
            f"Failed to {operation}: {response.status_code} - {response.text[:500]}",
            status_code=response.status_code,
        )


def create_object_store_client(
    config: StorageConfig,
    mock_mode: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ObjectStoreClient:
    """
    Create an object store client.

    In mock mode the client talks to the shared in-memory emulator
    through an httpx MockTransport, unless a client is passed in.

    Args:
        config: Storage configuration (validated even in mock mode)
        mock_mode: If True, route requests to the in-memory store
        http_client: Optional pre-built client (tests, connection reuse)
    """
    if mock_mode and http_client is None:
        from .mock import get_shared_mock_store

        store = get_shared_mock_store(config.endpoint_url)
        http_client = httpx.AsyncClient(transport=store.transport())
        return ObjectStoreClient(config, http_client=http_client, owns_client=True)

    return ObjectStoreClient(config, http_client=http_client)
