"""Invoice creation against a remote CRM."""

import logging
from typing import Any, Optional

import httpx

from .context import SyncContext
from .exceptions import CrmSyncError
from .field_mapping import CompiledMapping, compile_mapping
from .http_client import (
    browser_headers,
    build_client,
    embedded_error,
    encode_body,
    send_request,
    with_query,
)
from .models import CrmSession, Integration, SyncResult
from .session import apply_session_csrf

logger = logging.getLogger(__name__)

EXTERNAL_REF_KEYS = ("id", "invoiceId", "invoice_id", "number")


def extract_external_ref(data: Any) -> Optional[str]:
    """Find the remote invoice identifier in a JSON response."""
    if not isinstance(data, dict):
        return None
    for key in EXTERNAL_REF_KEYS:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    nested = data.get("data")
    if isinstance(nested, dict):
        return extract_external_ref(nested)
    return None


class InvoiceSyncClient:
    """
    Submits the create-invoice request for an integration.

    Never retries: the remote system's idempotency is unknown and a retried
    create can duplicate the invoice remotely.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.timeout = timeout

    async def create_invoice(
        self,
        integration: Integration,
        session: CrmSession,
        context: SyncContext,
        mapping: Optional[CompiledMapping] = None,
    ) -> SyncResult:
        """
        Render the field mapping against the context and create the invoice.

        Args:
            integration: Integration configuration
            session: Session returned by CredentialSessionManager.authenticate
            context: Client, invoice and seller data for this invoice
            mapping: Pre-compiled mapping; compiled from the integration if omitted

        Raises:
            FieldMappingError: If the mapping references values missing from context
            CrmSyncError: If the CRM rejects the request
            CrmNetworkError: Timeout or connection failure
        """
        compiled = mapping or compile_mapping(integration.fieldMapping)
        fields = compiled.resolve(context, integration.staticFields)

        headers = browser_headers(integration, referer=integration.createInvoiceUrl)
        apply_session_csrf(integration, session, headers, fields)

        method = integration.createInvoiceMethod.upper()
        if method == "GET":
            url, content = with_query(integration.createInvoiceUrl, fields), None
        else:
            url, content = integration.createInvoiceUrl, encode_body(fields, headers)

        logger.info(
            f"Creating invoice in CRM integration {integration.id}: {method} {url} "
            f"({len(fields)} fields)"
        )

        async with build_client(
            self.transport, self.timeout, cookies=session.jar
        ) as client:
            response = await send_request(client, method, url, headers, content)

        status = response.status_code
        if 300 <= status < 400:
            location = response.headers.get("location", "")
            raise CrmSyncError(
                f"CRM redirected the create request (HTTP {status} to "
                f"{location or 'unknown'}); "
                "the session may have expired",
                remote_status=status,
            )
        if not 200 <= status < 300:
            raise CrmSyncError(
                f"CRM rejected the invoice with HTTP {status}: {response.text[:200]}",
                remote_status=status,
            )

        marker = embedded_error(response)
        if marker:
            raise CrmSyncError(
                f"CRM reported an error: {marker}", remote_status=status
            )

        try:
            external_ref = extract_external_ref(response.json())
        except ValueError:
            external_ref = None

        logger.info(
            f"CRM integration {integration.id} accepted invoice: HTTP {status}, "
            f"externalRef={external_ref}"
        )
        return SyncResult(
            externalRef=external_ref, raw=response.text, statusCode=status
        )
