"""
Global pytest configuration and fixtures for the CRM Sync API test suite.
"""

import os
from typing import Any, Dict
from unittest.mock import AsyncMock, Mock

# Set test environment variables before settings are loaded
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only-32-chars"
os.environ.setdefault("CRM_PDF_DIR", "/tmp/crm-sync-tests/pdfs")

import jwt  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.main import app  # noqa: E402

# Import fixtures from fixture modules
from tests.fixtures.crm_fixtures import *  # noqa: F403, F401, E402


@pytest.fixture
def mock_prisma() -> Mock:
    """
    Mock Prisma client for unit tests that don't need real database.
    """
    mock_db = Mock()
    # Make async methods return AsyncMock
    mock_db.crmintegration.find_many = AsyncMock(return_value=[])
    mock_db.crmintegration.find_first = AsyncMock(return_value=None)
    mock_db.crmintegration.create = AsyncMock()
    mock_db.crmintegration.update = AsyncMock()
    mock_db.crmintegration.delete = AsyncMock()

    mock_db.crminvoicesync.find_unique = AsyncMock(return_value=None)
    mock_db.crminvoicesync.find_first = AsyncMock(return_value=None)
    mock_db.crminvoicesync.upsert = AsyncMock()
    mock_db.crminvoicesync.update = AsyncMock()
    return mock_db


@pytest.fixture
def test_jwt_secret() -> str:
    """JWT secret for generating test tokens."""
    return "test-secret-key-for-testing-only-32-chars"


@pytest.fixture
def test_user_id() -> str:
    """Standard test user ID."""
    return "test-user-id-123"


@pytest.fixture
def valid_jwt_payload(test_user_id: str) -> Dict[str, Any]:
    """Valid JWT payload for testing."""
    return {"sub": test_user_id, "email": "test@example.com"}


@pytest.fixture
def valid_jwt_token(test_jwt_secret: str, valid_jwt_payload: Dict[str, Any]) -> str:
    """Generate a valid JWT token for testing."""
    return jwt.encode(valid_jwt_payload, test_jwt_secret, algorithm="HS256")


@pytest.fixture
def auth_headers(valid_jwt_token: str) -> Dict[str, str]:
    """Generate authentication headers with valid JWT token."""
    return {"Authorization": f"Bearer {valid_jwt_token}"}


@pytest.fixture
def client() -> TestClient:
    """FastAPI test client for API endpoint testing."""
    return TestClient(app)
