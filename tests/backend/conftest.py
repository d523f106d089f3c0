"""
Pytest configuration and fixtures for backend API tests.
"""

import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def installed_service(service):
    """Install the in-memory pipeline service as the global app service."""
    import bookmark_weaver.server.app as app_module

    app_module._service = service
    yield service
    # Clean up after test
    app_module._service = None


@pytest.fixture
def client():
    """Test client without lifespan, so no background workers are started."""
    from bookmark_weaver.server.app import app

    return TestClient(app)


@pytest.fixture
def ingest_payload(sample_bookmarks):
    """Ingest request body for the shared sample bookmarks."""
    return {
        "user_id": "user-1",
        "bookmarks": sample_bookmarks,
        "settings": {"folder_density": "medium", "naming_tone": "clear"},
    }
