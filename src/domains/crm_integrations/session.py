"""
Login handshake against a remote CRM.

A session is a plain value (domain-aware cookie jar plus optional CSRF
token) returned by ``authenticate`` and passed explicitly to the sync and
lookup clients. It is never cached between operations.
"""

import logging
from typing import Dict, Optional
from urllib.parse import unquote, urljoin

import httpx

from src.core.security import CredentialCipher, CredentialError, get_credential_cipher
from src.core.settings import settings

from .csrf import extract_csrf_token
from .exceptions import CrmAuthError
from .http_client import (
    browser_headers,
    build_client,
    embedded_error,
    encode_body,
    send_request,
    with_query,
)
from .models import CrmSession, Integration

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302, 303, 307, 308)


class CredentialSessionManager:
    """Performs the login handshake for an integration."""

    def __init__(
        self,
        cipher: Optional[CredentialCipher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_redirects: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self._cipher = cipher
        self.transport = transport
        self.max_redirects = (
            max_redirects if max_redirects is not None else settings.CRM_MAX_REDIRECTS
        )
        self.timeout = timeout

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = get_credential_cipher()
        return self._cipher

    async def authenticate(self, integration: Integration) -> CrmSession:
        """
        Log in to the CRM and return the resulting session.

        Steps: optional CSRF scrape from the login page, credentialed
        submission following a bounded number of redirects, cookie capture on
        every hop. Cookies stay scoped to the host that set them, so a redirect
        to another host never receives the CRM's cookies. A terminal 2xx/3xx
        without an explicit failure marker is a successful login.

        Raises:
            CrmAuthError: Login rejected, CSRF token missing or bad credential
            CrmNetworkError: Timeout or connection failure
        """
        csrf_token: Optional[str] = None

        logger.info(
            f"Authenticating CRM integration {integration.id} ({integration.name}) "
            f"at {integration.loginUrl}"
        )

        async with build_client(self.transport, self.timeout) as client:
            if integration.csrfSelector:
                csrf_token = await self._scrape_csrf_token(client, integration)

            password = self._decrypt_password(integration)
            fields = {"email": integration.email, "password": password}
            headers = browser_headers(integration)
            if csrf_token:
                if integration.csrfHeader:
                    headers[integration.csrfHeader] = csrf_token
                else:
                    fields["_token"] = csrf_token

            method = integration.loginMethod.upper()
            if method == "GET":
                url, content = with_query(integration.loginUrl, fields), None
            else:
                url, content = integration.loginUrl, encode_body(fields, headers)
            response = await self._submit(client, method, url, headers, content)
            jar = client.cookies

        status = response.status_code
        if status >= 400:
            logger.warning(
                f"CRM login failed for integration {integration.id}: HTTP {status}"
            )
            raise CrmAuthError(
                f"Login failed with HTTP {status}",
                remote_status=status,
                reason=CrmAuthError.HTTP_STATUS,
            )

        marker = embedded_error(response)
        if marker:
            logger.warning(f"CRM login rejected for integration {integration.id}")
            raise CrmAuthError(
                f"Login rejected by CRM: {marker}",
                remote_status=status,
                reason=CrmAuthError.REJECTED,
            )

        logger.info(
            f"Authenticated CRM integration {integration.id}: HTTP {status}, "
            f"{len(jar)} cookies"
        )
        return CrmSession(jar=jar, csrfToken=csrf_token)

    async def _scrape_csrf_token(
        self, client: httpx.AsyncClient, integration: Integration
    ) -> str:
        headers = browser_headers(integration)
        headers["Accept"] = "text/html,application/xhtml+xml,*/*;q=0.8"
        response = await self._submit(
            client, "GET", integration.loginUrl, headers, None
        )
        if response.status_code >= 400:
            raise CrmAuthError(
                f"Login page returned HTTP {response.status_code}",
                remote_status=response.status_code,
                reason=CrmAuthError.HTTP_STATUS,
            )

        token = extract_csrf_token(response.text, integration.csrfSelector)
        if not token:
            logger.warning(
                f"CSRF token not found for integration {integration.id} "
                f"using selector {integration.csrfSelector!r}"
            )
            raise CrmAuthError(
                f"CSRF token not found on login page using selector "
                f"{integration.csrfSelector!r}",
                reason=CrmAuthError.CSRF_MISSING,
            )
        return token

    def _decrypt_password(self, integration: Integration) -> str:
        try:
            return self.cipher.decrypt(integration.encryptedPassword)
        except CredentialError as e:
            raise CrmAuthError(
                f"Stored CRM password is unusable: {e}. Re-enter the password.",
                reason=CrmAuthError.CREDENTIAL,
            )

    async def _submit(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        content: Optional[bytes],
    ) -> httpx.Response:
        """Send a request and follow redirects; the client jar collects cookies."""
        for hop in range(self.max_redirects + 1):
            response = await send_request(client, method, url, headers, content)

            location = response.headers.get("location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                return response
            if hop == self.max_redirects:
                break

            url = urljoin(url, location)
            if response.status_code in (301, 302, 303):
                method = "GET"
                content = None
                headers = {
                    k: v for k, v in headers.items() if k.lower() != "content-type"
                }
            logger.debug(f"Following HTTP {response.status_code} redirect to {url}")

        raise CrmAuthError(
            f"Login exceeded {self.max_redirects} redirects",
            remote_status=response.status_code,
            reason=CrmAuthError.REDIRECTS,
        )


def apply_session_csrf(
    integration: Integration,
    session: CrmSession,
    headers: Dict[str, str],
    fields: Dict[str, str],
) -> None:
    """
    Attach the session's anti-forgery token to a mutating request.

    The scraped token goes in the configured CSRF header, or in the ``_token``
    body field when no header is configured. Without a configured header an
    ``XSRF-TOKEN`` cookie is also mirrored into ``X-XSRF-TOKEN``.
    """
    if integration.csrfHeader:
        if session.csrfToken:
            headers[integration.csrfHeader] = session.csrfToken
        return

    if session.csrfToken:
        fields["_token"] = session.csrfToken
    xsrf_cookie = session.cookies.get("XSRF-TOKEN")
    if xsrf_cookie:
        headers["X-XSRF-TOKEN"] = unquote(xsrf_cookie)
