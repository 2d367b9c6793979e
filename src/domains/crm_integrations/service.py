"""
CRM integration service.

Integration settings CRUD plus the two live pipelines: pushing a local invoice
to the CRM (login + create) and fetching the CRM-generated PDF (login +
lookup + download). Remote failures are recorded on the invoice's sync record
and re-raised; the local invoice itself is never modified here.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from src.core.security import CredentialCipher, get_credential_cipher
from src.core.settings import settings
from src.shared.exceptions import (
    ConflictError,
    IntegrationConfigurationError,
    IntegrationNotFoundError,
    SyncRecordNotFoundError,
)

from .connection_tester import ConnectionTester
from .curl_parser import parse_curl_command
from .exceptions import CrmIntegrationError, CrmNetworkError
from .field_mapping import (
    CompiledMapping,
    CompiledMappingCache,
    compile_mapping,
    compiled_mappings,
)
from .locks import IntegrationLockRegistry, integration_locks
from .lookup_client import InvoiceLookupClient
from .models import (
    CrmInvoiceSyncStatus,
    Integration,
    IntegrationCreate,
    IntegrationResponse,
    IntegrationUpdate,
    InvoicePdfRequest,
    InvoicePdfResponse,
    InvoiceSyncRequest,
    InvoiceSyncResponse,
    InvoiceSyncStatusResponse,
    LookupResult,
    ParseCurlResult,
    PlaceholderInfo,
    SyncResult,
    TestConnectionResult,
)
from .placeholders import list_placeholders
from .session import CredentialSessionManager
from .sync_client import InvoiceSyncClient

if TYPE_CHECKING:
    from prisma import Prisma

logger = logging.getLogger(__name__)

# Stored as JSON text columns
JSON_FIELDS = ("headers", "fieldMapping", "staticFields")

# Columns that may be cleared by sending null
NULLABLE_FIELDS = (
    "csrfSelector",
    "csrfHeader",
    "listInvoicesUrl",
    "invoiceNumberPrefix",
    "invoiceNumberSuffix",
)


def _dump_json(value: Dict[str, str]) -> str:
    return json.dumps(value, ensure_ascii=False)


# Integration settings


async def list_integrations(user_id: str, db: "Prisma") -> List[IntegrationResponse]:
    """
    Get the user's integrations, active ones first, newest first.

    Args:
        user_id: Owner of the integrations
        db: Prisma database connection

    Returns:
        List[IntegrationResponse] without credentials
    """
    rows = await db.crmintegration.find_many(
        where={"userId": user_id},
        order=[{"isActive": "desc"}, {"createdAt": "desc"}],
    )
    return [
        IntegrationResponse.from_integration(Integration.from_prisma(row))
        for row in rows
    ]


async def get_integration_record(
    integration_id: str, user_id: str, db: "Prisma"
) -> Integration:
    """
    Load an integration owned by the user.

    Raises:
        IntegrationNotFoundError: If it does not exist or belongs to someone else
    """
    row = await db.crmintegration.find_first(
        where={"id": integration_id, "userId": user_id}
    )
    if not row:
        raise IntegrationNotFoundError()
    return Integration.from_prisma(row)


async def get_integration(
    integration_id: str, user_id: str, db: "Prisma"
) -> IntegrationResponse:
    integration = await get_integration_record(integration_id, user_id, db)
    return IntegrationResponse.from_integration(integration)


async def create_integration(
    request: IntegrationCreate,
    user_id: str,
    db: "Prisma",
    cipher: Optional[CredentialCipher] = None,
) -> IntegrationResponse:
    """
    Create an integration. The field mapping is compiled first so that an
    invalid mapping is rejected before anything is stored.

    Raises:
        FieldMappingError: If the mapping is invalid
    """
    compile_mapping(request.fieldMapping)
    cipher = cipher or get_credential_cipher()

    data: Dict[str, Any] = request.model_dump(exclude={"password"})
    data["password"] = cipher.encrypt(request.password)
    for field in JSON_FIELDS:
        data[field] = _dump_json(data[field])
    data["userId"] = user_id

    row = await db.crmintegration.create(data=data)
    logger.info(f"Created CRM integration {row.id} ({row.name}) for user {user_id}")
    return IntegrationResponse.from_integration(Integration.from_prisma(row))


async def update_integration(
    integration_id: str,
    request: IntegrationUpdate,
    user_id: str,
    db: "Prisma",
    cipher: Optional[CredentialCipher] = None,
) -> IntegrationResponse:
    """
    Update an integration; omitted fields keep their stored values and the
    stored password is only replaced when a new one is sent.

    Raises:
        IntegrationNotFoundError: If the integration is not the user's
        FieldMappingError: If a new mapping is invalid
    """
    current = await get_integration_record(integration_id, user_id, db)

    changes = request.model_dump(exclude_unset=True)
    data: Dict[str, Any] = {
        field: value
        for field, value in changes.items()
        if value is not None or field in NULLABLE_FIELDS
    }
    if not data:
        return IntegrationResponse.from_integration(current)

    if "fieldMapping" in data:
        compile_mapping(data["fieldMapping"])
    if "password" in data:
        data["password"] = (cipher or get_credential_cipher()).encrypt(data["password"])
    for field in JSON_FIELDS:
        if field in data:
            data[field] = _dump_json(data[field])

    row = await db.crmintegration.update(where={"id": integration_id}, data=data)
    logger.info(
        f"Updated CRM integration {integration_id}: {', '.join(sorted(data))}"
    )
    return IntegrationResponse.from_integration(Integration.from_prisma(row))


async def delete_integration(integration_id: str, user_id: str, db: "Prisma") -> None:
    """Delete an integration and, through the relation, its sync records."""
    await get_integration_record(integration_id, user_id, db)
    await db.crmintegration.delete(where={"id": integration_id})
    logger.info(f"Deleted CRM integration {integration_id}")


async def run_connection_test(
    integration_id: str,
    user_id: str,
    db: "Prisma",
    tester: Optional[ConnectionTester] = None,
    locks: Optional[IntegrationLockRegistry] = None,
) -> TestConnectionResult:
    """
    Run a login-only connection test for a stored integration.

    The test logs in like a pipeline does, so it waits for the integration's
    lock.
    """
    integration = await get_integration_record(integration_id, user_id, db)
    async with (locks or integration_locks).hold(integration.id):
        return await (tester or ConnectionTester()).test(integration)


def parse_curl(curl_command: str) -> ParseCurlResult:
    return parse_curl_command(curl_command)


def get_placeholders() -> Dict[str, PlaceholderInfo]:
    return list_placeholders()


# Live pipelines


class CrmSyncService:
    """Runs CRM pipelines for local invoices and records their outcome."""

    def __init__(
        self,
        db: "Prisma",
        session_manager: Optional[CredentialSessionManager] = None,
        sync_client: Optional[InvoiceSyncClient] = None,
        lookup_client: Optional[InvoiceLookupClient] = None,
        locks: Optional[IntegrationLockRegistry] = None,
        mappings: Optional[CompiledMappingCache] = None,
        pipeline_timeout: Optional[float] = None,
        pdf_dir: Optional[str] = None,
    ):
        self.db = db
        self.session_manager = session_manager or CredentialSessionManager()
        self.sync_client = sync_client or InvoiceSyncClient()
        self.lookup_client = lookup_client or InvoiceLookupClient()
        self.locks = locks or integration_locks
        self.mappings = mappings or compiled_mappings
        self.pipeline_timeout = (
            pipeline_timeout
            if pipeline_timeout is not None
            else settings.CRM_PIPELINE_TIMEOUT
        )
        self.pdf_dir = Path(pdf_dir or settings.CRM_PDF_DIR)

    async def resolve_integration(
        self, user_id: str, integration_id: Optional[str] = None
    ) -> Integration:
        """
        Pick the integration for a pipeline: the requested one, or the user's
        oldest active integration.

        Raises:
            IntegrationNotFoundError: If no usable integration exists
            IntegrationConfigurationError: If the requested one is inactive
        """
        if integration_id:
            integration = await get_integration_record(integration_id, user_id, self.db)
            if not integration.isActive:
                raise IntegrationConfigurationError("CRM integration is not active")
            return integration

        row = await self.db.crmintegration.find_first(
            where={"userId": user_id, "isActive": True},
            order={"createdAt": "asc"},
        )
        if not row:
            raise IntegrationNotFoundError("No active CRM integration configured")
        return Integration.from_prisma(row)

    async def sync_invoice(
        self, invoice_id: str, request: InvoiceSyncRequest, user_id: str
    ) -> InvoiceSyncResponse:
        """
        Push a local invoice to the CRM.

        An invoice already synced to the integration is refused, since the
        remote create is not idempotent. The check, the remote create and the
        recorded outcome all happen under the integration's lock. Failures mark
        the sync record failed and are re-raised; nothing is retried
        automatically.

        Raises:
            ConflictError: If the invoice was already synced
            FieldMappingError: If the mapping cannot be resolved for this invoice
            CrmIntegrationError: Auth, sync or network failure against the CRM
        """
        integration = await self.resolve_integration(user_id, request.integrationId)
        mapping = self.mappings.get(
            integration.id, integration.updatedAt, integration.fieldMapping
        )
        # Fail on missing invoice data before logging in anywhere
        mapping.resolve(request.context, integration.staticFields)

        key = self._sync_key(invoice_id, integration.id)
        async with self.locks.hold(integration.id):
            existing = await self.db.crminvoicesync.find_unique(where=key)
            if existing and existing.status == CrmInvoiceSyncStatus.SYNCED.value:
                raise ConflictError(
                    f"Invoice already synced to {integration.name} "
                    f"(external ref {existing.externalRef or 'unknown'})"
                )

            await self.db.crminvoicesync.upsert(
                where=key,
                data={
                    "create": {
                        "invoiceId": invoice_id,
                        "integrationId": integration.id,
                        "status": CrmInvoiceSyncStatus.PENDING.value,
                        "attempts": 1,
                    },
                    "update": {
                        "status": CrmInvoiceSyncStatus.PENDING.value,
                        "attempts": {"increment": 1},
                    },
                },
            )

            try:
                result = await self._with_timeout(
                    self._create_remote_invoice(integration, mapping, request)
                )
            except CrmIntegrationError as e:
                await self._record_failure(key, e.message)
                logger.warning(
                    f"CRM sync failed for invoice {invoice_id} via integration "
                    f"{integration.id}: {e.message}"
                )
                raise

            record = await self.db.crminvoicesync.update(
                where=key,
                data={
                    "status": CrmInvoiceSyncStatus.SYNCED.value,
                    "externalRef": result.externalRef,
                    "lastError": None,
                    "syncedAt": datetime.now(),
                },
            )

        logger.info(
            f"Synced invoice {invoice_id} to CRM integration {integration.id} "
            f"(externalRef={result.externalRef})"
        )
        return InvoiceSyncResponse(
            success=True,
            message=f"Invoice created in {integration.name}",
            externalRef=result.externalRef,
            sync=InvoiceSyncStatusResponse.from_prisma(record),
        )

    async def fetch_invoice_pdf(
        self, invoice_id: str, request: InvoicePdfRequest, user_id: str
    ) -> InvoicePdfResponse:
        """
        Locate the CRM's copy of an invoice and optionally download its PDF.

        Raises:
            IntegrationConfigurationError: If the integration has no list URL
            CrmIntegrationError: Auth, lookup or network failure against the CRM
        """
        integration = await self.resolve_integration(user_id, request.integrationId)
        if not integration.listInvoicesUrl:
            raise IntegrationConfigurationError(
                "CRM integration has no invoice list URL configured"
            )

        key = self._sync_key(invoice_id, integration.id)
        async with self.locks.hold(integration.id):
            lookup, content = await self._with_timeout(
                self._lookup_remote_pdf(integration, request)
            )

            pdf_path: Optional[str] = None
            if content is not None:
                path = self.pdf_dir / f"crm-{invoice_id}.pdf"
                await asyncio.to_thread(_write_file, path, content)
                pdf_path = str(path)

            update: Dict[str, Any] = {"pdfUrl": lookup.pdfUrl}
            if pdf_path:
                update["pdfPath"] = pdf_path
            await self.db.crminvoicesync.upsert(
                where=key,
                data={
                    "create": {
                        "invoiceId": invoice_id,
                        "integrationId": integration.id,
                        "status": CrmInvoiceSyncStatus.SYNCED.value,
                        **update,
                    },
                    "update": update,
                },
            )

        logger.info(
            f"Found CRM invoice {lookup.remoteNumber} for invoice {invoice_id} "
            f"(downloaded={pdf_path is not None})"
        )
        return InvoicePdfResponse(
            success=True,
            message=f"Found invoice {lookup.remoteNumber} in {integration.name}",
            pdfUrl=lookup.pdfUrl,
            pdfPath=pdf_path,
            remoteNumber=lookup.remoteNumber,
        )

    async def get_sync_status(
        self, invoice_id: str, user_id: str, integration_id: Optional[str] = None
    ) -> InvoiceSyncStatusResponse:
        """Most recently updated sync record for an invoice."""
        where: Dict[str, Any] = {
            "invoiceId": invoice_id,
            "integration": {"is": {"userId": user_id}},
        }
        if integration_id:
            where["integrationId"] = integration_id

        record = await self.db.crminvoicesync.find_first(
            where=where, order={"updatedAt": "desc"}
        )
        if not record:
            raise SyncRecordNotFoundError()
        return InvoiceSyncStatusResponse.from_prisma(record)

    async def _with_timeout(self, pipeline):
        """Await one pipeline, bounded by the overall pipeline timeout."""
        try:
            return await asyncio.wait_for(pipeline, timeout=self.pipeline_timeout)
        except asyncio.TimeoutError:
            raise CrmNetworkError(
                f"Timed out after {self.pipeline_timeout:g}s talking to the CRM",
                timed_out=True,
            )

    async def _create_remote_invoice(
        self,
        integration: Integration,
        mapping: CompiledMapping,
        request: InvoiceSyncRequest,
    ) -> SyncResult:
        session = await self.session_manager.authenticate(integration)
        return await self.sync_client.create_invoice(
            integration, session, request.context, mapping
        )

    async def _lookup_remote_pdf(
        self, integration: Integration, request: InvoicePdfRequest
    ):
        session = await self.session_manager.authenticate(integration)
        lookup: LookupResult = await self.lookup_client.find_invoice_pdf(
            integration, session, request.invoiceNumber
        )
        content: Optional[bytes] = None
        if request.download and lookup.pdfUrl:
            content = await self.lookup_client.download_pdf(
                integration, session, lookup.pdfUrl
            )
        return lookup, content

    async def _record_failure(self, key: Dict[str, Any], message: str) -> None:
        await self.db.crminvoicesync.update(
            where=key,
            data={
                "status": CrmInvoiceSyncStatus.FAILED.value,
                "lastError": message[:1000],
            },
        )

    @staticmethod
    def _sync_key(invoice_id: str, integration_id: str) -> Dict[str, Any]:
        return {
            "invoiceId_integrationId": {
                "invoiceId": invoice_id,
                "integrationId": integration_id,
            }
        }


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
