"""
Tests for the login-only connection check in
src/domains/crm_integrations/connection_tester.py
"""

import asyncio
import time

import httpx
import pytest

from src.core.security import CredentialCipher
from src.domains.crm_integrations.connection_tester import ConnectionTester
from src.domains.crm_integrations.session import CredentialSessionManager
from tests.fixtures.crm_fixtures import CrmStub, login_ok, make_integration


def _tester(
    cipher: CredentialCipher, transport: httpx.AsyncBaseTransport, **kwargs
) -> ConnectionTester:
    manager = CredentialSessionManager(cipher=cipher, transport=transport)
    return ConnectionTester(session_manager=manager, **kwargs)


class TestConnectionTester:
    @pytest.mark.asyncio
    async def test_success(
        self, test_cipher: CredentialCipher, crm_stub: CrmStub
    ) -> None:
        crm_stub.add("POST", "/login", login_ok())

        result = await _tester(test_cipher, crm_stub.transport).test(
            make_integration(test_cipher)
        )

        assert result.success is True
        assert "Test CRM" in result.message
        assert result.error is None
        # Only the login endpoint is touched
        assert {r.url.path for r in crm_stub.requests} == {"/login"}

    @pytest.mark.asyncio
    async def test_unreachable_login_url(self, test_cipher: CredentialCipher) -> None:
        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Name or service not known", request=request)

        result = await _tester(test_cipher, httpx.MockTransport(unreachable)).test(
            make_integration(test_cipher)
        )

        assert result.success is False
        assert result.message.startswith("Network error")

    @pytest.mark.asyncio
    async def test_stalled_login_times_out_within_bound(
        self, test_cipher: CredentialCipher
    ) -> None:
        async def stall(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        started = time.monotonic()
        result = await _tester(
            test_cipher, httpx.MockTransport(stall), timeout=0.2
        ).test(make_integration(test_cipher))

        assert time.monotonic() - started < 5
        assert result.success is False
        assert result.message.startswith("Timed out after 0.2s")

    @pytest.mark.asyncio
    async def test_http_status_failure(
        self, test_cipher: CredentialCipher, crm_stub: CrmStub
    ) -> None:
        crm_stub.add("POST", "/login", httpx.Response(403, text="Forbidden"))

        result = await _tester(test_cipher, crm_stub.transport).test(
            make_integration(test_cipher)
        )

        assert result.success is False
        assert result.message == "Login failed with HTTP 403"

    @pytest.mark.asyncio
    async def test_missing_csrf_token(
        self, test_cipher: CredentialCipher, crm_stub: CrmStub
    ) -> None:
        crm_stub.add("GET", "/login", httpx.Response(200, text="<form></form>"))

        result = await _tester(test_cipher, crm_stub.transport).test(
            make_integration(test_cipher, csrfSelector='input[name="_token"]')
        )

        assert result.success is False
        assert result.message.startswith("CSRF token not found")
        assert [r.method for r in crm_stub.requests] == ["GET"]
