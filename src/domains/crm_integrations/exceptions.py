"""
Domain-specific exceptions for CRM integrations.

Parse and mapping errors are configuration problems reported back to the
settings UI. Auth, sync, lookup and network errors come from the remote CRM
and never roll back local records.
"""

from typing import Optional

from src.shared.exceptions import BaseHTTPException


class CrmIntegrationError(BaseHTTPException):
    """Base exception for CRM integration errors."""

    status_code = 400
    message = "CRM integration error"


class CurlParseError(CrmIntegrationError):
    """Raised when a pasted cURL capture cannot be parsed."""

    status_code = 400
    message = "Could not parse cURL command"


class FieldMappingError(CrmIntegrationError):
    """Raised for invalid mapping JSON, unknown or unresolved placeholders."""

    status_code = 400
    message = "Invalid field mapping"


class CrmAuthError(CrmIntegrationError):
    """Raised when logging in to the remote CRM fails."""

    status_code = 502
    message = "CRM login failed"

    # Reasons used by the connection tester to pick a message
    HTTP_STATUS = "http_status"
    CSRF_MISSING = "csrf_missing"
    REJECTED = "rejected"
    REDIRECTS = "redirects"
    CREDENTIAL = "credential"

    def __init__(
        self,
        message: Optional[str] = None,
        remote_status: Optional[int] = None,
        reason: str = REJECTED,
    ) -> None:
        super().__init__(message)
        self.remote_status = remote_status
        self.reason = reason


class CrmSyncError(CrmIntegrationError):
    """Raised when the remote CRM rejects invoice creation."""

    status_code = 502
    message = "CRM rejected the invoice"

    def __init__(
        self, message: Optional[str] = None, remote_status: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.remote_status = remote_status


class CrmLookupError(CrmIntegrationError):
    """Raised when no matching remote invoice or PDF can be found."""

    status_code = 404
    message = "Invoice not found in CRM"


class CrmNetworkError(CrmIntegrationError):
    """Raised on timeouts, refused connections and DNS failures."""

    status_code = 504
    message = "Could not reach CRM"

    def __init__(self, message: Optional[str] = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out
