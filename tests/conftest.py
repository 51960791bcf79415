"""
Shared pytest fixtures.

Every test gets a clean temporary DATA_DIR and a fresh provider / market
backend cache so tests are fully isolated from each other and from the
real .env configuration.
"""
from __future__ import annotations

import io
import sys
from pathlib import Path

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """Redirect DATA_DIR to a fresh tmp directory for every test."""
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    import config
    monkeypatch.setattr(config, "DATA_DIR", str(data))
    yield data


@pytest.fixture(autouse=True)
def reset_caches():
    """Each test starts with a clean provider cache and no market backend."""
    import market_search
    import providers.manager as manager_mod
    manager_mod._providers = {}
    market_search._backend = None
    yield
    manager_mod._providers = {}
    market_search._backend = None


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A small real JPEG."""
    from PIL import Image
    buf = io.BytesIO()
    Image.new("RGB", (64, 48), (200, 30, 30)).save(buf, format="JPEG")
    return buf.getvalue()
