"""
In-memory S3 emulator for local development and tests.

Plugged into httpx through MockTransport, so the real ObjectStoreClient
and uploader run unchanged: requests are still signed, URLs still carry
presign parameters, and the completion body is still parsed as XML.

It understands exactly the operations the migration engine uses:

    POST   /{bucket}/{key}?uploads=            initiate
    PUT    /{bucket}/{key}?partNumber&uploadId part upload (returns ETag)
    POST   /{bucket}/{key}?uploadId=           complete
    DELETE /{bucket}/{key}?uploadId=           abort
    PUT    /{bucket}/{key}                     simple upload
    DELETE /{bucket}/{key}                     delete object
    GET    /{bucket}/{key}                     read back

Fault injection knobs let tests script failures per part number.

Not suitable for production, but perfect for development and testing.
"""

import hashlib
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from xml.etree import ElementTree

import httpx

logger = logging.getLogger(__name__)

_S3_NS = "http://s3.amazonaws.com/doc/2006-03-01/"


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    etag: str


@dataclass
class _OpenUpload:
    key: str
    content_type: str
    parts: dict[int, tuple[bytes, str]] = field(default_factory=dict)


def _etag_for(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


def _xml_error(status_code: int, code: str, message: str) -> httpx.Response:
    body = f"<Error><Code>{code}</Code><Message>{message}</Message></Error>"
    return httpx.Response(
        status_code,
        content=body.encode("utf-8"),
        headers={"content-type": "application/xml"},
    )


class MockObjectStore:
    """
    In-memory bucket(s) keyed by "bucket/key".

    Every handled request is counted in `calls` under one of: initiate,
    put_part, complete, abort, put_object, delete, get.
    """

    def __init__(self) -> None:
        self.objects: dict[str, StoredObject] = {}
        self.uploads: dict[str, _OpenUpload] = {}
        self.calls: Counter = Counter()
        # part numbers as listed in each completion body, in body order
        self.completed_orders: list[list[int]] = []

        # fault injection: part number -> how many more times to misbehave
        self.fail_part_puts: dict[int, int] = {}
        self.omit_etag_parts: dict[int, int] = {}
        self.fail_object_puts = 0
        self.fail_initiate = False
        self.fail_complete = False
        self.fail_abort = False
        # awaited before each part PUT is answered (e.g. to hang a transfer)
        self.before_part_put: Optional[Callable[[int], Awaitable[None]]] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def get_object(self, bucket: str, key: str) -> Optional[StoredObject]:
        return self.objects.get(f"{bucket}/{key}")

    def reset(self) -> None:
        self.objects.clear()
        self.uploads.clear()
        self.calls.clear()
        self.completed_orders.clear()

    # -----------------------------------------------------------------------
    # Request handling
    # -----------------------------------------------------------------------

    async def handle(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        path = request.url.path.lstrip("/")
        if "/" not in path:
            return _xml_error(400, "InvalidRequest", "Path-style bucket/key required")
        bucket, key = path.split("/", 1)

        if not self._is_signed(request):
            return _xml_error(403, "AccessDenied", "Request is not signed")

        method = request.method
        if method == "POST" and "uploads" in params:
            return self._initiate(bucket, key, request)
        if method == "PUT" and "partNumber" in params and "uploadId" in params:
            return await self._put_part(params["uploadId"], int(params["partNumber"]), request)
        if method == "POST" and "uploadId" in params:
            return self._complete(bucket, key, params["uploadId"], request)
        if method == "DELETE" and "uploadId" in params:
            return self._abort(params["uploadId"])
        if method == "PUT":
            return self._put_object(bucket, key, request)
        if method == "DELETE":
            self.calls["delete"] += 1
            self.objects.pop(f"{bucket}/{key}", None)
            return httpx.Response(204)
        if method == "GET":
            self.calls["get"] += 1
            stored = self.objects.get(f"{bucket}/{key}")
            if stored is None:
                return _xml_error(404, "NoSuchKey", key)
            return httpx.Response(
                200,
                content=stored.data,
                headers={"content-type": stored.content_type, "etag": stored.etag},
            )

        return _xml_error(405, "MethodNotAllowed", method)

    @staticmethod
    def _is_signed(request: httpx.Request) -> bool:
        if "X-Amz-Signature" in request.url.params:
            return request.url.params.get("X-Amz-SignedHeaders") == "host"
        return request.headers.get("authorization", "").startswith(
            "AWS4-HMAC-SHA256 Credential="
        )

    def _initiate(self, bucket: str, key: str, request: httpx.Request) -> httpx.Response:
        self.calls["initiate"] += 1
        if self.fail_initiate:
            return _xml_error(500, "InternalError", "initiate failed")

        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = _OpenUpload(
            key=f"{bucket}/{key}",
            content_type=request.headers.get("content-type", "application/octet-stream"),
        )
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f'<InitiateMultipartUploadResult xmlns="{_S3_NS}">'
            f"<Bucket>{bucket}</Bucket><Key>{key}</Key>"
            f"<UploadId>{upload_id}</UploadId>"
            "</InitiateMultipartUploadResult>"
        )
        return httpx.Response(200, content=body.encode("utf-8"))

    async def _put_part(
        self,
        upload_id: str,
        part_number: int,
        request: httpx.Request,
    ) -> httpx.Response:
        self.calls["put_part"] += 1
        if self.before_part_put is not None:
            await self.before_part_put(part_number)

        upload = self.uploads.get(upload_id)
        if upload is None:
            return _xml_error(404, "NoSuchUpload", upload_id)

        if self.fail_part_puts.get(part_number, 0) > 0:
            self.fail_part_puts[part_number] -= 1
            return _xml_error(500, "InternalError", f"part {part_number} failed")

        data = request.content
        etag = _etag_for(data)
        upload.parts[part_number] = (data, etag)

        if self.omit_etag_parts.get(part_number, 0) > 0:
            self.omit_etag_parts[part_number] -= 1
            return httpx.Response(200)
        return httpx.Response(200, headers={"etag": etag})

    def _complete(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        request: httpx.Request,
    ) -> httpx.Response:
        self.calls["complete"] += 1
        if self.fail_complete:
            return _xml_error(500, "InternalError", "complete failed")

        upload = self.uploads.get(upload_id)
        if upload is None:
            return _xml_error(404, "NoSuchUpload", upload_id)

        try:
            root = ElementTree.fromstring(request.content)
        except ElementTree.ParseError:
            return _xml_error(400, "MalformedXML", "completion body is not XML")

        listed: list[tuple[int, str]] = [
            (int(part.findtext("PartNumber")), part.findtext("ETag") or "")
            for part in root.findall("Part")
        ]
        numbers = [number for number, _ in listed]
        self.completed_orders.append(numbers)

        if not listed or numbers != sorted(numbers):
            return _xml_error(400, "InvalidPartOrder", "parts must be ascending")
        for number, etag in listed:
            stored = upload.parts.get(number)
            if stored is None or stored[1] != etag:
                return _xml_error(400, "InvalidPart", f"part {number}")

        data = b"".join(upload.parts[number][0] for number in numbers)
        self.objects[upload.key] = StoredObject(
            data=data,
            content_type=upload.content_type,
            etag=_etag_for(data),
        )
        del self.uploads[upload_id]

        body = (
            f'<CompleteMultipartUploadResult xmlns="{_S3_NS}">'
            f"<Bucket>{bucket}</Bucket><Key>{key}</Key>"
            "</CompleteMultipartUploadResult>"
        )
        return httpx.Response(200, content=body.encode("utf-8"))

    def _abort(self, upload_id: str) -> httpx.Response:
        self.calls["abort"] += 1
        if self.fail_abort:
            return _xml_error(500, "InternalError", "abort failed")
        if self.uploads.pop(upload_id, None) is None:
            return _xml_error(404, "NoSuchUpload", upload_id)
        return httpx.Response(204)

    def _put_object(self, bucket: str, key: str, request: httpx.Request) -> httpx.Response:
        self.calls["put_object"] += 1
        if self.fail_object_puts > 0:
            self.fail_object_puts -= 1
            return _xml_error(500, "InternalError", "put failed")

        data = request.content
        stored = StoredObject(
            data=data,
            content_type=request.headers.get("content-type", "application/octet-stream"),
            etag=_etag_for(data),
        )
        self.objects[f"{bucket}/{key}"] = stored
        return httpx.Response(200, headers={"etag": stored.etag})


# Shared instances for mock mode, one per endpoint, so uploads persist
# across requests during a development session.
_shared_stores: dict[str, MockObjectStore] = {}


def get_shared_mock_store(endpoint_url: str) -> MockObjectStore:
    store = _shared_stores.get(endpoint_url)
    if store is None:
        store = MockObjectStore()
        _shared_stores[endpoint_url] = store
        logger.info("Created shared mock object store", extra={"endpoint": endpoint_url})
    return store
