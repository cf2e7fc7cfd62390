"""
Integration test fixtures for videobatch.

A full FastAPI test client backed by SQLite, the in-memory ledger and the
pull-worker dispatcher.
"""

from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from videobatch.api.dependencies import get_dispatcher, get_ledger
from videobatch.api.main import app
from videobatch.models import get_db
from videobatch.services.dispatch import PullWorkerDispatcher


@pytest.fixture(scope="function")
def client(db_engine, ledger) -> Generator[TestClient, None, None]:
    """Create a test client with overridden dependencies."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_dispatcher] = PullWorkerDispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def api_key_headers(api_key, raw_api_key: str) -> dict:
    """Headers carrying a valid enterprise API key."""
    return {"X-API-Key": raw_api_key}
