"""
Tests for object_store.py: uploads never raise.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

import config
from object_store import SupabaseObjectStore, get_object_store


def fake_session(status: int = 200, post_side_effect=None):
    mock_resp = MagicMock()
    mock_resp.status = status
    mock_resp.text = AsyncMock(return_value="bucket not found")
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__ = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.post = MagicMock(return_value=mock_resp, side_effect=post_side_effect)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    return mock_session


@pytest.fixture
def store():
    return SupabaseObjectStore("https://proj.supabase.co/", "service-key", "scans")


@pytest.mark.asyncio
class TestUpload:
    async def test_success_returns_public_url(self, store, jpeg_bytes):
        session = fake_session(200)
        with patch("object_store.aiohttp.ClientSession", return_value=session):
            url = await store.upload(jpeg_bytes, owner="user1")

        assert url.startswith("https://proj.supabase.co/storage/v1/object/public/scans/user1/")
        assert url.endswith(".jpg")
        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer service-key"
        assert kwargs["headers"]["Content-Type"] == "image/jpeg"
        assert kwargs["data"] == jpeg_bytes

    async def test_http_error_returns_none(self, store, jpeg_bytes):
        with patch("object_store.aiohttp.ClientSession", return_value=fake_session(400)):
            assert await store.upload(jpeg_bytes) is None

    async def test_client_error_returns_none(self, store, jpeg_bytes):
        session = fake_session(post_side_effect=aiohttp.ClientConnectionError("refused"))
        with patch("object_store.aiohttp.ClientSession", return_value=session):
            assert await store.upload(jpeg_bytes) is None

    async def test_empty_bytes_skipped(self, store):
        assert await store.upload(b"") is None


class TestGetObjectStore:
    def test_unconfigured(self, monkeypatch):
        monkeypatch.setattr(config, "SUPABASE_URL", None)
        assert get_object_store() is None

    def test_configured(self, monkeypatch):
        monkeypatch.setattr(config, "SUPABASE_URL", "https://proj.supabase.co")
        monkeypatch.setattr(config, "SUPABASE_KEY", "key")
        assert isinstance(get_object_store(), SupabaseObjectStore)
