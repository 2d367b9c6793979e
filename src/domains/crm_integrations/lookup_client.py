"""
Remote invoice lookup.

CRMs number invoices themselves (``FS/123/MCG`` for local ``123``), so the
generated PDF is found by reading the CRM's invoice listing, a server-side
table endpoint in the DataTables style, and matching normalised numbers.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel

from .exceptions import CrmLookupError
from .http_client import browser_headers, build_client, encode_body, send_request
from .models import CrmSession, Integration, LookupResult
from .session import apply_session_csrf

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100
MAX_LIST_PAGES = 20

NUMBER_KEYS = ("number", "invoiceNumber", "invoice_number")
PDF_KEYS = ("pdfUrl", "pdf_url", "pdf")
DATE_KEYS = ("createdAt", "created_at", "date")

_ISO_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2})(?::(\d{2}))?)?")
_DOTTED_DATE = re.compile(r"\b(\d{2})\.(\d{2})\.(\d{4})\b")


class RemoteInvoice(BaseModel):
    """One row of the CRM invoice listing."""

    number: str
    pdfHref: Optional[str] = None
    date: Optional[datetime] = None


def normalize_invoice_number(
    value: str, prefix: Optional[str] = None, suffix: Optional[str] = None
) -> str:
    """Trim, strip the configured prefix then suffix, trim again."""
    text = value.strip()
    if prefix and text.startswith(prefix):
        text = text[len(prefix) :]
    if suffix and text.endswith(suffix):
        text = text[: -len(suffix)]
    return text.strip()


def cell_text(cell: Any) -> str:
    if cell is None:
        return ""
    text = str(cell)
    if "<" in text:
        return BeautifulSoup(text, "html.parser").get_text(" ", strip=True)
    return text.strip()


def find_pdf_href(cell: Any) -> Optional[str]:
    """First ``href`` in an HTML fragment that points at a .pdf file."""
    if not isinstance(cell, str) or "href" not in cell:
        return None
    soup = BeautifulSoup(cell, "html.parser")
    for element in soup.find_all(href=True):
        href = element["href"].strip()
        if urlparse(href).path.lower().endswith(".pdf"):
            return href
    return None


def parse_listing_date(value: Any) -> Optional[datetime]:
    text = cell_text(value)
    if not text:
        return None
    try:
        match = _ISO_DATE.search(text)
        if match:
            year, month, day, hour, minute, second = match.groups()
            return datetime(
                int(year),
                int(month),
                int(day),
                int(hour or 0),
                int(minute or 0),
                int(second or 0),
            )
        match = _DOTTED_DATE.search(text)
        if match:
            day, month, year = match.groups()
            return datetime(int(year), int(month), int(day))
    except ValueError:
        return None
    return None


def parse_listing_row(row: Any) -> Optional[RemoteInvoice]:
    """Parse an array or object row; rows without a number are skipped."""
    if isinstance(row, (list, tuple)):
        if not row:
            return None
        number = cell_text(row[1] if len(row) > 1 else row[0])
        pdf_href = next((h for h in map(find_pdf_href, row) if h), None)
        date = next((d for d in map(parse_listing_date, row) if d), None)
    elif isinstance(row, dict):
        number = next(
            (cell_text(row[key]) for key in NUMBER_KEYS if row.get(key)), ""
        )
        pdf_href = None
        for key in PDF_KEYS:
            value = row.get(key)
            if value:
                pdf_href = find_pdf_href(value) or cell_text(value)
                break
        date = next(
            (parse_listing_date(row[key]) for key in DATE_KEYS if row.get(key)), None
        )
    else:
        return None

    if not number:
        return None
    return RemoteInvoice(number=number, pdfHref=pdf_href, date=date)


def _page_rows(payload: Any) -> Tuple[List[Any], Optional[int]]:
    """Rows and total record count of one listing page."""
    if isinstance(payload, list):
        return payload, None
    if not isinstance(payload, dict):
        return [], None
    rows = payload.get("data")
    if rows is None:
        rows = payload.get("aaData", [])
    total = payload.get("recordsFiltered", payload.get("recordsTotal"))
    try:
        total = int(total) if total is not None else None
    except (TypeError, ValueError):
        total = None
    return rows if isinstance(rows, list) else [], total


class InvoiceLookupClient:
    """Finds CRM-generated invoices and their PDFs."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.timeout = timeout

    async def find_invoice_pdf(
        self, integration: Integration, session: CrmSession, invoice_number: str
    ) -> LookupResult:
        """
        Match a local invoice number against the CRM listing.

        Remote numbers are normalised with the integration's prefix and suffix
        and compared exactly. Several matches resolve to the most recent one;
        if no single most recent match exists the lookup fails.

        Raises:
            CrmLookupError: No match, ambiguous match, or match without PDF
            CrmNetworkError: Timeout or connection failure
        """
        if not integration.listInvoicesUrl:
            raise CrmLookupError("Integration has no invoice list URL configured")

        prefix = integration.invoiceNumberPrefix
        suffix = integration.invoiceNumberSuffix
        target = normalize_invoice_number(invoice_number, prefix, suffix)
        if not target:
            raise CrmLookupError("Invoice number is empty")

        rows = await self.list_invoices(integration, session)
        matches = [
            row
            for row in rows
            if normalize_invoice_number(row.number, prefix, suffix) == target
        ]
        logger.info(
            f"CRM integration {integration.id}: {len(rows)} listed invoices, "
            f"{len(matches)} matching {target!r}"
        )

        if not matches:
            raise CrmLookupError(f"Invoice {target} not found in CRM listing")

        chosen = matches[0]
        if len(matches) > 1:
            dated = [row for row in matches if row.date is not None]
            latest = max((row.date for row in dated), default=None)
            newest = [row for row in dated if row.date == latest]
            if len(newest) != 1:
                raise CrmLookupError(
                    f"Invoice {target} is ambiguous: {len(matches)} CRM invoices "
                    "match and none is uniquely the most recent"
                )
            chosen = newest[0]

        if not chosen.pdfHref:
            raise CrmLookupError(
                f"Invoice {chosen.number} found in CRM but has no PDF link"
            )

        pdf_url = urljoin(integration.listInvoicesUrl, chosen.pdfHref)
        return LookupResult(pdfUrl=pdf_url, remoteNumber=chosen.number)

    async def list_invoices(
        self, integration: Integration, session: CrmSession
    ) -> List[RemoteInvoice]:
        """Read the invoice listing page by page."""
        invoices: List[RemoteInvoice] = []

        async with build_client(
            self.transport, self.timeout, cookies=session.jar
        ) as client:
            start = 0
            for page in range(MAX_LIST_PAGES):
                payload = await self._fetch_page(
                    client, integration, session, start=start, draw=page + 1
                )
                rows, total = _page_rows(payload)
                invoices.extend(
                    invoice for invoice in map(parse_listing_row, rows) if invoice
                )
                start += len(rows)
                # a listing without a record count is not paginated
                if total is None or start >= total or len(rows) < LIST_PAGE_SIZE:
                    break
            else:
                logger.warning(
                    f"CRM integration {integration.id}: stopped listing after "
                    f"{MAX_LIST_PAGES} pages"
                )

        return invoices

    async def _fetch_page(
        self,
        client: httpx.AsyncClient,
        integration: Integration,
        session: CrmSession,
        start: int,
        draw: int,
    ) -> Any:
        fields: Dict[str, str] = {
            "draw": str(draw),
            "start": str(start),
            "length": str(LIST_PAGE_SIZE),
            "search[value]": "",
            "order[0][column]": "0",
            "order[0][dir]": "desc",
        }
        headers = browser_headers(integration, referer=integration.listInvoicesUrl)
        apply_session_csrf(integration, session, headers, fields)
        content = encode_body(fields, headers)

        response = await send_request(
            client,
            "POST",
            integration.listInvoicesUrl,
            headers,
            content,
        )
        if not 200 <= response.status_code < 300:
            raise CrmLookupError(
                f"Invoice listing returned HTTP {response.status_code}"
            )
        try:
            return response.json()
        except ValueError:
            raise CrmLookupError("Invoice listing did not return JSON")

    async def download_pdf(
        self, integration: Integration, session: CrmSession, pdf_url: str
    ) -> bytes:
        """
        Download a PDF with the session's cookies.

        Redirects are followed; cookies only go to hosts that set them.

        Raises:
            CrmLookupError: Non-2xx response or a body that is not a PDF
            CrmNetworkError: Timeout or connection failure
        """
        headers = browser_headers(integration, referer=integration.listInvoicesUrl)
        headers["Accept"] = "application/pdf,*/*;q=0.8"

        async with build_client(
            self.transport, self.timeout, cookies=session.jar
        ) as client:
            response = await send_request(
                client,
                "GET",
                pdf_url,
                headers,
                follow_redirects=True,
            )

        if not 200 <= response.status_code < 300:
            raise CrmLookupError(
                f"PDF download failed with HTTP {response.status_code}"
            )

        content_type = response.headers.get("content-type", "").lower()
        if not response.content.startswith(b"%PDF") and "pdf" not in content_type:
            raise CrmLookupError(
                "CRM did not return a PDF (the session may have expired)"
            )

        logger.info(
            f"Downloaded {len(response.content)} byte PDF from CRM integration "
            f"{integration.id}"
        )
        return response.content
