from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
async def _shared_store(shared_store: None) -> None:
    # Every integration test runs against a freshly created shared store.
    yield
