"""Invoice, client and seller data that placeholders resolve against."""

from datetime import date as date_type
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field


class ClientData(BaseModel):
    """Buyer of the invoice."""

    name: Optional[str] = None
    email: Optional[str] = None
    nip: Optional[str] = None
    bankAccount: Optional[str] = None
    streetAddress: Optional[str] = None
    postcode: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    crmClientId: Optional[str] = None


class InvoiceData(BaseModel):
    """Locally created invoice. Amounts are computed by the invoicing module."""

    number: Optional[str] = None
    amount: Optional[Decimal] = None
    netAmount: Optional[Decimal] = None
    vatAmount: Optional[Decimal] = None
    grossAmount: Optional[Decimal] = None
    currency: Optional[str] = None
    date: Optional[date_type] = None
    dueDate: Optional[date_type] = None
    deliveryDate: Optional[date_type] = None
    language: Optional[str] = None
    month: Optional[int] = Field(None, ge=1, le=12)
    year: Optional[int] = None
    description: Optional[str] = None

    @property
    def numberFormatted(self) -> Optional[str]:
        """Invoice number in ``num/MM/YYYY`` form, as many CRMs expect it."""
        if not self.number:
            return None
        month = self.month or (self.date.month if self.date else None)
        year = self.year or (self.date.year if self.date else None)
        if month is None or year is None:
            return None
        return f"{self.number}/{month:02d}/{year}"


class UserData(BaseModel):
    """Seller issuing the invoice."""

    name: Optional[str] = None
    nip: Optional[str] = None
    email: Optional[str] = None
    streetAddress: Optional[str] = None
    postcode: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class BankAccountData(BaseModel):
    """Seller bank account printed on the invoice."""

    iban: Optional[str] = None
    bankName: Optional[str] = None
    swift: Optional[str] = None
    crmRequisitesId: Optional[str] = None
    currency: Optional[str] = None


# Derived values exposed as placeholders alongside plain fields
COMPUTED_FIELDS = frozenset({"numberFormatted"})


class SyncContext(BaseModel):
    """Everything a field mapping may reference for one invoice."""

    client: ClientData = Field(default_factory=ClientData)
    invoice: InvoiceData = Field(default_factory=InvoiceData)
    user: UserData = Field(default_factory=UserData)
    bankAccount: Optional[BankAccountData] = None


def format_value(value: Any) -> Optional[str]:
    """Render a context value the way it is sent to the CRM."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, date_type):
        return value.isoformat()
    text = str(value)
    return text if text.strip() else None


def resolve_token(name: str, context: SyncContext) -> Optional[str]:
    """
    Resolve a dotted placeholder name (e.g. ``client.name``) against a context.

    Returns None when the namespace or field is missing or has no value.
    """
    namespace, _, field = name.partition(".")
    if not field or "." in field:
        return None

    if namespace not in SyncContext.model_fields:
        return None
    section = getattr(context, namespace)
    if section is None:
        return None

    if field not in type(section).model_fields and field not in COMPUTED_FIELDS:
        return None
    return format_value(getattr(section, field, None))
