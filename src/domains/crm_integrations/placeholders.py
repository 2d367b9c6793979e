"""Catalog of placeholder tokens usable in CRM field mappings.

Tokens use the ``{{namespace.field}}`` syntax shared with the settings UI.
Adding or renaming a token is a catalog change and bumps ``CATALOG_VERSION``.
"""

import re
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .models import PlaceholderInfo

CATALOG_VERSION = 1

# Full-string token syntax; whitespace inside the braces is tolerated
PLACEHOLDER_PATTERN = re.compile(r"^\{\{\s*([^{}]*?)\s*\}\}$")

_ENTRIES: List[Tuple[str, str, str]] = [
    # Client (buyer) fields
    ("client.name", "Client company name", "Bluefield Technologies s.r.o."),
    ("client.email", "Client email", "client@example.com"),
    ("client.nip", "Client tax ID (NIP)", "12345678"),
    ("client.bankAccount", "Client bank account", "SK31 1200 0000 1987 4263 7541"),
    ("client.streetAddress", "Client street address", "Mlynske nivy 4963/56"),
    ("client.postcode", "Client postal code", "821 05"),
    ("client.city", "Client city", "Bratislava"),
    ("client.country", "Client country", "Slovakia"),
    ("client.crmClientId", "Client ID in CRM", "8769"),
    # Invoice fields
    ("invoice.number", "Invoice number", "INV-202601-ABC123"),
    (
        "invoice.numberFormatted",
        "Invoice number in CRM format (num/MM/YYYY)",
        "123/01/2026",
    ),
    ("invoice.amount", "Invoice amount", "5000.00"),
    ("invoice.netAmount", "Net amount", "5000.00"),
    ("invoice.vatAmount", "VAT amount", "1150.00"),
    ("invoice.grossAmount", "Gross amount", "6150.00"),
    ("invoice.currency", "Currency code", "EUR"),
    ("invoice.date", "Issue date", "2026-01-06"),
    ("invoice.dueDate", "Due date", "2026-01-20"),
    ("invoice.deliveryDate", "Delivery date", "2026-01-31"),
    ("invoice.language", "Invoice language", "EN"),
    ("invoice.month", "Invoice month (1-12)", "1"),
    ("invoice.year", "Invoice year", "2026"),
    ("invoice.description", "Service description", "Software development"),
    # User (seller) fields
    ("user.name", "Seller name", "Northwind Consulting"),
    ("user.nip", "Seller tax ID (NIP)", "5250001009"),
    ("user.email", "Seller email", "seller@example.com"),
    ("user.streetAddress", "Seller street address", "Marszalkowska 10/4"),
    ("user.postcode", "Seller postal code", "02-069"),
    ("user.city", "Seller city", "Warszawa"),
    ("user.country", "Seller country", "Polska"),
    # Seller bank account
    ("bankAccount.iban", "Bank IBAN", "PL77 1020 1169 0000 8002 0902 5612"),
    ("bankAccount.bankName", "Bank name", "PKO Bank Polski"),
    ("bankAccount.swift", "SWIFT/BIC code", "BPKOPLPW"),
    ("bankAccount.crmRequisitesId", "Bank requisites ID in CRM", "2929"),
    ("bankAccount.currency", "Account currency", "PLN"),
]


def format_token(name: str) -> str:
    """Wrap a dotted name into placeholder syntax."""
    return "{{" + name + "}}"


def parse_token(value: str) -> Optional[str]:
    """
    Return the dotted name if ``value`` is exactly one ``{{...}}`` token.

    Returns None for anything else, including strings that merely contain
    ``{{...}}`` among other text.
    """
    match = PLACEHOLDER_PATTERN.match(value)
    if not match:
        return None
    return match.group(1)


class PlaceholderCatalog:
    """Read-only, ordered mapping of token -> PlaceholderInfo."""

    def __init__(self, entries: List[Tuple[str, str, str]]):
        self._entries: Mapping[str, PlaceholderInfo] = MappingProxyType(
            {
                format_token(name): PlaceholderInfo(
                    description=description, example=example
                )
                for name, description, example in entries
            }
        )

    def __contains__(self, token: object) -> bool:
        return token in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, token: str) -> Optional[PlaceholderInfo]:
        return self._entries.get(token)

    def items(self) -> Iterator[Tuple[str, PlaceholderInfo]]:
        return iter(self._entries.items())

    def as_dict(self) -> Dict[str, PlaceholderInfo]:
        """Copy of the catalog, in declaration order."""
        return dict(self._entries)


PLACEHOLDERS = PlaceholderCatalog(_ENTRIES)


def list_placeholders() -> Dict[str, PlaceholderInfo]:
    """Return every known placeholder with its description and example."""
    return PLACEHOLDERS.as_dict()
