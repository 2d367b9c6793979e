# src/domains/crm_integrations/models.py
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .context import SyncContext

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH")


def _validate_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid URL: {value}")
    return value


def _validate_method(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    method = value.strip().upper()
    if method not in ALLOWED_METHODS:
        raise ValueError(f"Unsupported HTTP method: {value}")
    return method


def _load_json_object(raw: Any) -> Dict[str, str]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    data = json.loads(raw)
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items()}


class PlaceholderInfo(BaseModel):
    """Human-readable description of a placeholder token."""

    description: str = Field(..., description="What the placeholder resolves to")
    example: str = Field(..., description="Example resolved value")


# cURL parsing


class ParsedCurlRequest(BaseModel):
    """Structured form of a captured browser request."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, str] = Field(default_factory=dict)
    contentType: str = ""


class ParsedCurlField(BaseModel):
    """A single body field with an optional suggested placeholder."""

    name: str
    value: str
    suggestedPlaceholder: Optional[str] = None


class ParseCurlResult(BaseModel):
    """Result of parsing a cURL capture; never raised, always returned."""

    success: bool
    request: Optional[ParsedCurlRequest] = None
    fields: Optional[List[ParsedCurlField]] = None
    error: Optional[str] = None


class ParseCurlRequestBody(BaseModel):
    """Request body for the parse-curl endpoint."""

    curlCommand: str = Field(..., min_length=1, description="Pasted cURL command")


# Integration configuration


class Integration(BaseModel):
    """Runtime view of a persisted CRM integration."""

    id: str
    userId: Optional[str] = None
    name: str
    isActive: bool = True
    loginUrl: str
    loginMethod: str = "POST"
    email: str
    encryptedPassword: str = Field("", repr=False)
    csrfSelector: Optional[str] = None
    csrfHeader: Optional[str] = None
    createInvoiceUrl: str
    createInvoiceMethod: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    fieldMapping: str = Field("{}", description="Raw field mapping JSON")
    staticFields: Dict[str, str] = Field(default_factory=dict)
    listInvoicesUrl: Optional[str] = None
    invoiceNumberPrefix: Optional[str] = None
    invoiceNumberSuffix: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_prisma(cls, row: Any) -> "Integration":
        return cls(
            id=row.id,
            userId=row.userId,
            name=row.name,
            isActive=row.isActive,
            loginUrl=row.loginUrl,
            loginMethod=row.loginMethod or "POST",
            email=row.email,
            encryptedPassword=row.password or "",
            csrfSelector=row.csrfSelector,
            csrfHeader=row.csrfHeader,
            createInvoiceUrl=row.createInvoiceUrl,
            createInvoiceMethod=row.createInvoiceMethod or "POST",
            headers=_load_json_object(row.headers),
            fieldMapping=row.fieldMapping or "{}",
            staticFields=_load_json_object(row.staticFields),
            listInvoicesUrl=row.listInvoicesUrl,
            invoiceNumberPrefix=row.invoiceNumberPrefix,
            invoiceNumberSuffix=row.invoiceNumberSuffix,
            createdAt=row.createdAt,
            updatedAt=row.updatedAt,
        )


class IntegrationResponse(BaseModel):
    """Integration as returned by read APIs; the password is never included."""

    id: str
    name: str
    isActive: bool
    loginUrl: str
    loginMethod: str
    email: str
    hasCredential: bool
    csrfSelector: Optional[str] = None
    csrfHeader: Optional[str] = None
    createInvoiceUrl: str
    createInvoiceMethod: str
    headers: Dict[str, str] = Field(default_factory=dict)
    fieldMapping: Dict[str, str] = Field(default_factory=dict)
    staticFields: Dict[str, str] = Field(default_factory=dict)
    listInvoicesUrl: Optional[str] = None
    invoiceNumberPrefix: Optional[str] = None
    invoiceNumberSuffix: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_integration(cls, integration: Integration) -> "IntegrationResponse":
        return cls(
            id=integration.id,
            name=integration.name,
            isActive=integration.isActive,
            loginUrl=integration.loginUrl,
            loginMethod=integration.loginMethod,
            email=integration.email,
            hasCredential=bool(integration.encryptedPassword),
            csrfSelector=integration.csrfSelector,
            csrfHeader=integration.csrfHeader,
            createInvoiceUrl=integration.createInvoiceUrl,
            createInvoiceMethod=integration.createInvoiceMethod,
            headers=integration.headers,
            fieldMapping=_load_json_object(integration.fieldMapping),
            staticFields=integration.staticFields,
            listInvoicesUrl=integration.listInvoicesUrl,
            invoiceNumberPrefix=integration.invoiceNumberPrefix,
            invoiceNumberSuffix=integration.invoiceNumberSuffix,
            createdAt=integration.createdAt,
            updatedAt=integration.updatedAt,
        )


class IntegrationCreate(BaseModel):
    """Request body for creating an integration."""

    name: str = Field(..., min_length=1)
    isActive: bool = True
    loginUrl: str
    loginMethod: str = "POST"
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, repr=False)
    csrfSelector: Optional[str] = None
    csrfHeader: Optional[str] = None
    createInvoiceUrl: str
    createInvoiceMethod: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    fieldMapping: Dict[str, str] = Field(default_factory=dict)
    staticFields: Dict[str, str] = Field(default_factory=dict)
    listInvoicesUrl: Optional[str] = None
    invoiceNumberPrefix: Optional[str] = None
    invoiceNumberSuffix: Optional[str] = None

    @field_validator("loginUrl", "createInvoiceUrl", "listInvoicesUrl")
    @classmethod
    def validate_urls(cls, v: Optional[str]) -> Optional[str]:
        return _validate_url(v or None)

    @field_validator("loginMethod", "createInvoiceMethod")
    @classmethod
    def validate_methods(cls, v: str) -> str:
        return _validate_method(v) or "POST"


class IntegrationUpdate(BaseModel):
    """Request body for updating an integration; omitted fields are kept."""

    name: Optional[str] = Field(None, min_length=1)
    isActive: Optional[bool] = None
    loginUrl: Optional[str] = None
    loginMethod: Optional[str] = None
    email: Optional[str] = Field(None, min_length=1)
    password: Optional[str] = Field(None, min_length=1, repr=False)
    csrfSelector: Optional[str] = None
    csrfHeader: Optional[str] = None
    createInvoiceUrl: Optional[str] = None
    createInvoiceMethod: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    fieldMapping: Optional[Dict[str, str]] = None
    staticFields: Optional[Dict[str, str]] = None
    listInvoicesUrl: Optional[str] = None
    invoiceNumberPrefix: Optional[str] = None
    invoiceNumberSuffix: Optional[str] = None

    @field_validator("loginUrl", "createInvoiceUrl", "listInvoicesUrl")
    @classmethod
    def validate_urls(cls, v: Optional[str]) -> Optional[str]:
        return _validate_url(v or None)

    @field_validator("loginMethod", "createInvoiceMethod")
    @classmethod
    def validate_methods(cls, v: Optional[str]) -> Optional[str]:
        return _validate_method(v)


class TestConnectionResult(BaseModel):
    """Outcome of a login-only connection test."""

    __test__ = False  # not a pytest test class

    success: bool
    message: str
    error: Optional[str] = None


# Session and sync results


class CrmSession(BaseModel):
    """
    Cookie jar and CSRF token for one sync attempt. Never persisted.

    The jar is domain-aware: each cookie is only sent back to the host (and
    path) that set it.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    jar: httpx.Cookies = Field(default_factory=httpx.Cookies, repr=False)
    csrfToken: Optional[str] = Field(None, repr=False)
    createdAt: datetime = Field(default_factory=datetime.now)

    @property
    def cookies(self) -> Dict[str, str]:
        """Cookie names and values across every host in the jar."""
        return {cookie.name: cookie.value or "" for cookie in self.jar.jar}


class SyncResult(BaseModel):
    """Remote response to an invoice creation request."""

    externalRef: Optional[str] = None
    raw: str = ""
    statusCode: int


class LookupResult(BaseModel):
    """Matched remote invoice and its PDF link."""

    pdfUrl: Optional[str] = None
    remoteNumber: str


# Sync API


class CrmInvoiceSyncStatus(str, Enum):
    """Sync state of a local invoice against one integration."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class InvoiceSyncRequest(BaseModel):
    """Request body for pushing a local invoice to a CRM."""

    integrationId: Optional[str] = Field(
        None, description="Integration to use; defaults to the first active one"
    )
    context: SyncContext


class InvoicePdfRequest(BaseModel):
    """Request body for locating and downloading a CRM-generated PDF."""

    integrationId: Optional[str] = None
    invoiceNumber: str = Field(..., min_length=1)
    download: bool = True


class InvoiceSyncStatusResponse(BaseModel):
    """Recorded sync outcome for a local invoice."""

    invoiceId: str
    integrationId: str
    status: CrmInvoiceSyncStatus
    externalRef: Optional[str] = None
    pdfUrl: Optional[str] = None
    pdfPath: Optional[str] = None
    lastError: Optional[str] = None
    attempts: int = 0
    syncedAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_prisma(cls, row: Any) -> "InvoiceSyncStatusResponse":
        return cls(
            invoiceId=row.invoiceId,
            integrationId=row.integrationId,
            status=CrmInvoiceSyncStatus(row.status),
            externalRef=row.externalRef,
            pdfUrl=row.pdfUrl,
            pdfPath=row.pdfPath,
            lastError=row.lastError,
            attempts=row.attempts or 0,
            syncedAt=row.syncedAt,
            updatedAt=row.updatedAt,
        )


class InvoiceSyncResponse(BaseModel):
    """Response for a successful invoice push."""

    success: bool
    message: str
    externalRef: Optional[str] = None
    sync: InvoiceSyncStatusResponse


class InvoicePdfResponse(BaseModel):
    """Response for a PDF lookup."""

    success: bool
    message: str
    pdfUrl: Optional[str] = None
    pdfPath: Optional[str] = None
    remoteNumber: Optional[str] = None
