from __future__ import annotations

import hashlib
import os
import shutil
from pathlib import Path

import pytest

# Set env before any farecheck imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.farecheck_test.db")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", ".tmp_storage_test")
os.environ.setdefault("RECOGNITION_ENABLED", "false")


@pytest.fixture(autouse=True)
def _reset_db_and_storage() -> None:
    import farecheck.models  # noqa: F401
    from farecheck.core.db import engine
    from farecheck.core.models import Base

    # Reset storage and cache singletons
    import farecheck.core.storage as storage_mod
    import farecheck.modules.cache.service as cache_service

    storage_mod._storage = None
    cache_service._cache = None

    storage_path = Path(os.environ["LOCAL_STORAGE_PATH"])
    if storage_path.exists():
        shutil.rmtree(storage_path)

    # Reset DB schema
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)

    yield


@pytest.fixture
def screenshot_bytes():
    """Distinct pseudo-random screenshot bodies; the same seed gives the same bytes."""

    def _make(seed: str, *, size: int = 1280) -> bytes:
        out = bytearray()
        counter = 0
        while len(out) < size:
            out += hashlib.sha256(f"{seed}:{counter}".encode()).digest()
            counter += 1
        return bytes(out[:size])

    return _make


@pytest.fixture
def cache():
    from farecheck.modules.cache.service import ComputationCache
    from farecheck.modules.cache.store import SqlCacheStore

    return ComputationCache(SqlCacheStore(), budget_seconds=5.0, max_workers=4)
