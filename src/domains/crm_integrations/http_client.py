"""
Outbound HTTP plumbing shared by the CRM clients.

Requests are built to look like the browser session the integration was
captured from. Redirects are never followed automatically. Each operation
gets its own client seeded with the session's cookie jar; httpx matches
cookies to hosts, so a cookie never travels to a host that did not set it.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode, urlparse

import httpx

from src.core.settings import settings

from .exceptions import CrmNetworkError
from .models import Integration

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded; charset=UTF-8"

# Set by httpx itself or by the session, never copied from configuration
_MANAGED_HEADERS = {"host", "content-length", "connection", "cookie", "accept-encoding"}


def merge_headers(
    base: Mapping[str, str], overlay: Mapping[str, str]
) -> Dict[str, str]:
    """Overlay headers case-insensitively, keeping the overlay's spelling."""
    merged = dict(base)
    for name, value in overlay.items():
        if name.lower() in _MANAGED_HEADERS:
            continue
        for existing in [k for k in merged if k.lower() == name.lower()]:
            del merged[existing]
        merged[name] = value
    return merged


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def browser_headers(
    integration: Integration, referer: Optional[str] = None
) -> Dict[str, str]:
    """Default browser-like headers with the integration's static headers on top."""
    defaults = {
        "User-Agent": settings.CRM_USER_AGENT,
        "Accept": "application/json, text/javascript, */*; q=0.01",
        "Accept-Language": "en-US,en;q=0.9",
        "X-Requested-With": "XMLHttpRequest",
        "Origin": origin_of(integration.loginUrl),
        "Referer": referer or integration.loginUrl,
    }
    return merge_headers(defaults, integration.headers)


def encode_body(fields: Mapping[str, str], headers: Dict[str, str]) -> bytes:
    """
    Encode a body the way the configured Content-Type says.

    JSON when the headers declare it, form-urlencoded otherwise. A missing
    Content-Type header is filled in.
    """
    content_type = get_header(headers, "Content-Type")
    if content_type and "json" in content_type.lower():
        body = json.dumps(dict(fields), separators=(",", ":"), ensure_ascii=False)
        return body.encode("utf-8")
    if not content_type:
        headers["Content-Type"] = FORM_CONTENT_TYPE
    return urlencode(dict(fields)).encode("utf-8")


def build_client(
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: Optional[float] = None,
    cookies: Optional[httpx.Cookies] = None,
) -> httpx.AsyncClient:
    """
    Create a client for one CRM operation.

    The client works on a copy of ``cookies``; read ``client.cookies`` to see
    what the CRM set during the operation.
    """
    return httpx.AsyncClient(
        timeout=timeout if timeout is not None else settings.CRM_HTTP_TIMEOUT,
        follow_redirects=False,
        transport=transport,
        cookies=cookies,
    )


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Mapping[str, str],
    content: Optional[bytes] = None,
    follow_redirects: bool = False,
) -> httpx.Response:
    """
    Send one request, translating transport failures to CrmNetworkError.

    Cancellation is not caught and propagates to the caller.
    """
    host = urlparse(url).netloc or url
    request = client.build_request(method, url, headers=dict(headers), content=content)
    try:
        response = await client.send(request, follow_redirects=follow_redirects)
    except httpx.TimeoutException as e:
        timeout = client.timeout.read
        logger.warning(f"Timed out calling CRM {method} {url}: {type(e).__name__}")
        raise CrmNetworkError(
            f"Timed out after {timeout:g}s waiting for {host}", timed_out=True
        )
    except httpx.RequestError as e:
        logger.warning(f"Network error calling CRM {method} {url}: {e!r}")
        raise CrmNetworkError(f"Network error: could not reach {host} ({e})")

    logger.debug(f"CRM {method} {url} -> HTTP {response.status_code}")
    return response


def _describe(value: Any) -> str:
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False)
    return text[:200]


def embedded_error(response: httpx.Response) -> Optional[str]:
    """
    Detect an error reported inside a successful HTTP response.

    Returns a short description when the JSON body has ``success`` false or a
    non-empty ``error``/``errors`` member, otherwise None.
    """
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    success = data.get("success")
    if success is False or (isinstance(success, str) and success.lower() == "false"):
        detail = data.get("message") or data.get("error") or data.get("errors")
        return _describe(detail) if detail else "success=false"

    for key in ("error", "errors"):
        value = data.get(key)
        if value:
            return _describe(value)
    return None


def with_query(url: str, fields: Mapping[str, str]) -> str:
    """Append fields to a URL query string (for GET submissions)."""
    if not fields:
        return url
    separator = "&" if urlparse(url).query else "?"
    return f"{url}{separator}{urlencode(dict(fields))}"

