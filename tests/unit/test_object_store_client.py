"""
Unit tests for ObjectStoreClient against the in-memory S3 emulator.

The emulator rejects unsigned requests, so these also check that every
call goes out signed the way its operation requires.
"""

import asyncio

import httpx
import pytest

from conftest import BUCKET, FIXED_NOW, make_storage_config, stored
from r2migrate.core.errors import ConfigurationError, ProtocolError
from r2migrate.core.migration.models import CompletedPart
from r2migrate.infrastructure.storage.client import (
    ObjectStoreClient,
    create_object_store_client,
)
from r2migrate.infrastructure.storage.mock import get_shared_mock_store


class TestStorageConfig:
    """Required settings are checked before anything is signed."""

    def test_missing_fields_listed(self):
        config = make_storage_config(secret_access_key="", public_url="")
        assert config.missing_fields() == ["secret_access_key", "public_url"]

    def test_client_refuses_incomplete_config(self):
        with pytest.raises(ConfigurationError, match="bucket_name"):
            ObjectStoreClient(make_storage_config(bucket_name=""))


class TestUrls:
    """Keys, public URLs and presigned URLs."""

    def test_public_url_joins_with_single_slash(self):
        client = ObjectStoreClient(make_storage_config(public_url="https://pub.example.com/"))
        assert client.public_url("/u1/videos/a.mp4") == "https://pub.example.com/u1/videos/a.mp4"

    def test_object_path_is_path_style(self, store_client):
        assert store_client.object_path("u1/a.mp4") == f"/{BUCKET}/u1/a.mp4"

    def test_empty_key_rejected(self, store_client):
        with pytest.raises(ValueError):
            store_client.object_path("/")

    def test_part_numbers_start_at_one(self, store_client):
        with pytest.raises(ValueError):
            store_client.get_part_upload_url("k", "upload", 0)

    def test_simple_put_url_accepted_by_store(self, store_client, mock_store):
        url = store_client.get_simple_put_url("u1/thumb.jpg")

        async def put():
            return await store_client.http_client.put(
                url, content=b"jpeg", headers={"content-type": "image/jpeg"}
            )

        response = asyncio.run(put())

        assert response.status_code == 200
        assert stored(mock_store, "u1/thumb.jpg") == b"jpeg"
        assert mock_store.get_object(BUCKET, "u1/thumb.jpg").content_type == "image/jpeg"

    def test_presigned_url_uses_injected_clock(self, store_client):
        url = store_client.get_simple_put_url("k")
        assert f"X-Amz-Date={FIXED_NOW.strftime('%Y%m%dT%H%M%SZ')}" in url


class TestMultipartPrimitives:
    """initiate / part / complete / abort round trips."""

    def test_full_multipart_round_trip(self, store_client, mock_store):
        async def run():
            upload_id = await store_client.initiate_multipart("big.mp4", "video/mp4")
            parts = []
            for number, chunk in ((1, b"aaa"), (2, b"bbb")):
                url = store_client.get_part_upload_url("big.mp4", upload_id, number)
                response = await store_client.http_client.put(url, content=chunk)
                parts.append(CompletedPart(number, response.headers["etag"]))
            # reversed on purpose: the client must sort before sending
            await store_client.complete_multipart("big.mp4", upload_id, reversed(parts))

        asyncio.run(run())

        assert stored(mock_store, "big.mp4") == b"aaabbb"
        assert mock_store.completed_orders == [[1, 2]]
        assert mock_store.get_object(BUCKET, "big.mp4").content_type == "video/mp4"

    def test_initiate_failure_is_protocol_error(self, store_client, mock_store):
        mock_store.fail_initiate = True

        with pytest.raises(ProtocolError) as exc_info:
            asyncio.run(store_client.initiate_multipart("k"))

        assert exc_info.value.status_code == 500

    def test_complete_with_wrong_etag_is_protocol_error(self, store_client, mock_store):
        async def run():
            upload_id = await store_client.initiate_multipart("k")
            url = store_client.get_part_upload_url("k", upload_id, 1)
            await store_client.http_client.put(url, content=b"data")
            await store_client.complete_multipart("k", upload_id, [CompletedPart(1, '"bogus"')])

        with pytest.raises(ProtocolError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.status_code == 400

    def test_abort_discards_upload(self, store_client, mock_store):
        async def run():
            upload_id = await store_client.initiate_multipart("k")
            return await store_client.abort_multipart("k", upload_id)

        assert asyncio.run(run()) is True
        assert mock_store.uploads == {}
        assert mock_store.calls["abort"] == 1

    def test_abort_failure_is_reported_not_raised(self, store_client, mock_store):
        """Abort is cleanup; a failing abort must not mask the original error."""
        assert asyncio.run(store_client.abort_multipart("k", "no-such-upload")) is False

    def test_delete_object(self, store_client, mock_store):
        async def run():
            await store_client.http_client.put(store_client.get_simple_put_url("k"), content=b"x")
            await store_client.delete_object("k")

        asyncio.run(run())

        assert stored(mock_store, "k") is None
        assert mock_store.calls["delete"] == 1


class TestTransportErrors:
    """Network failures surface as ProtocolError."""

    def test_connect_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ObjectStoreClient(
            make_storage_config(),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(ProtocolError, match="connection refused"):
            asyncio.run(client.initiate_multipart("k"))


class TestFactory:
    """create_object_store_client wiring."""

    def test_mock_mode_uses_shared_store(self, monkeypatch):
        from r2migrate.infrastructure.storage import mock

        monkeypatch.setattr(mock, "_shared_stores", {})
        config = make_storage_config(endpoint_url="https://factory-test.example.com")

        async def run():
            async with create_object_store_client(config, mock_mode=True) as client:
                await client.http_client.put(client.get_simple_put_url("k"), content=b"shared")

        asyncio.run(run())

        shared = get_shared_mock_store("https://factory-test.example.com")
        assert shared.get_object(BUCKET, "k").data == b"shared"
