"""
Tests for integration CRUD and the sync pipelines in
src/domains/crm_integrations/service.py
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Dict
from unittest.mock import AsyncMock, Mock

import pytest

from src.core.security import CredentialCipher
from src.domains.crm_integrations.context import SyncContext
from src.domains.crm_integrations.exceptions import (
    CrmAuthError,
    CrmNetworkError,
    CrmSyncError,
    FieldMappingError,
)
from src.domains.crm_integrations.field_mapping import CompiledMappingCache
from src.domains.crm_integrations.locks import IntegrationLockRegistry
from src.domains.crm_integrations.models import (
    IntegrationCreate,
    IntegrationUpdate,
    InvoicePdfRequest,
    InvoiceSyncRequest,
    LookupResult,
    SyncResult,
)
from src.domains.crm_integrations.service import (
    CrmSyncService,
    create_integration,
    delete_integration,
    get_integration,
    list_integrations,
    run_connection_test,
    update_integration,
)
from src.shared.exceptions import (
    ConflictError,
    IntegrationConfigurationError,
    IntegrationNotFoundError,
    SyncRecordNotFoundError,
)
from tests.fixtures.crm_fixtures import (
    TEST_PASSWORD,
    make_session,
    mock_integration_row,
    mock_sync_record,
)


def _create_request(**overrides) -> IntegrationCreate:
    values = {
        "name": "Test CRM",
        "loginUrl": "https://crm.test/login",
        "email": "owner@example.com",
        "password": TEST_PASSWORD,
        "createInvoiceUrl": "https://crm.test/invoices/create",
        "fieldMapping": {"company": "{{client.name}}"},
        "staticFields": {"type": "vat"},
    }
    values.update(overrides)
    return IntegrationCreate(**values)


class TestIntegrationCrud:
    """Integration settings persistence."""

    @pytest.mark.asyncio
    async def test_list_orders_and_hides_password(
        self, mock_prisma: Mock, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.find_many = AsyncMock(return_value=[integration_row])

        result = await list_integrations("test-user-id-123", mock_prisma)

        assert len(result) == 1
        assert result[0].hasCredential is True
        assert "password" not in result[0].model_dump()
        assert "encryptedPassword" not in result[0].model_dump()
        assert result[0].fieldMapping == {"company": "{{client.name}}"}
        mock_prisma.crmintegration.find_many.assert_called_once_with(
            where={"userId": "test-user-id-123"},
            order=[{"isActive": "desc"}, {"createdAt": "desc"}],
        )

    @pytest.mark.asyncio
    async def test_get_other_users_integration(self, mock_prisma: Mock) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=None)

        with pytest.raises(IntegrationNotFoundError):
            await get_integration("integration-1", "someone-else", mock_prisma)

        mock_prisma.crmintegration.find_first.assert_called_once_with(
            where={"id": "integration-1", "userId": "someone-else"}
        )

    @pytest.mark.asyncio
    async def test_create_encrypts_password(
        self, mock_prisma: Mock, test_cipher: CredentialCipher, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.create = AsyncMock(return_value=integration_row)

        result = await create_integration(
            _create_request(), "test-user-id-123", mock_prisma, cipher=test_cipher
        )

        data = mock_prisma.crmintegration.create.call_args.kwargs["data"]
        assert data["password"] != TEST_PASSWORD
        assert test_cipher.decrypt(data["password"]) == TEST_PASSWORD
        assert data["userId"] == "test-user-id-123"
        assert json.loads(data["fieldMapping"]) == {"company": "{{client.name}}"}
        assert json.loads(data["staticFields"]) == {"type": "vat"}
        assert data["headers"] == "{}"
        assert result.hasCredential is True

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_placeholder(
        self, mock_prisma: Mock, test_cipher: CredentialCipher
    ) -> None:
        request = _create_request(fieldMapping={"company": "{{client.unknown}}"})

        with pytest.raises(FieldMappingError):
            await create_integration(
                request, "test-user-id-123", mock_prisma, cipher=test_cipher
            )

        mock_prisma.crmintegration.create.assert_not_called()

    def test_create_request_validation(self) -> None:
        with pytest.raises(ValueError):
            _create_request(loginUrl="crm.test/login")
        with pytest.raises(ValueError):
            _create_request(loginMethod="DELETE")
        assert _create_request(createInvoiceMethod="put").createInvoiceMethod == "PUT"

    @pytest.mark.asyncio
    async def test_update_keeps_password_when_omitted(
        self, mock_prisma: Mock, test_cipher: CredentialCipher, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)
        mock_prisma.crmintegration.update = AsyncMock(return_value=integration_row)

        await update_integration(
            "integration-1",
            IntegrationUpdate(name="Renamed", csrfSelector=None, headers={"A": "b"}),
            "test-user-id-123",
            mock_prisma,
            cipher=test_cipher,
        )

        data = mock_prisma.crmintegration.update.call_args.kwargs["data"]
        assert data == {
            "name": "Renamed",
            "csrfSelector": None,
            "headers": '{"A": "b"}',
        }

    @pytest.mark.asyncio
    async def test_update_replaces_password(
        self, mock_prisma: Mock, test_cipher: CredentialCipher, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)
        mock_prisma.crmintegration.update = AsyncMock(return_value=integration_row)

        await update_integration(
            "integration-1",
            IntegrationUpdate(password="new-pass", name=None),
            "test-user-id-123",
            mock_prisma,
            cipher=test_cipher,
        )

        data = mock_prisma.crmintegration.update.call_args.kwargs["data"]
        assert set(data) == {"password"}
        assert test_cipher.decrypt(data["password"]) == "new-pass"

    @pytest.mark.asyncio
    async def test_update_without_changes(
        self, mock_prisma: Mock, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)

        result = await update_integration(
            "integration-1", IntegrationUpdate(), "test-user-id-123", mock_prisma
        )

        assert result.id == "integration-1"
        mock_prisma.crmintegration.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete(self, mock_prisma: Mock, integration_row: Mock) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)

        await delete_integration("integration-1", "test-user-id-123", mock_prisma)

        mock_prisma.crmintegration.delete.assert_called_once_with(
            where={"id": "integration-1"}
        )

    @pytest.mark.asyncio
    async def test_connection_test_uses_stored_integration(
        self, mock_prisma: Mock, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)
        tester = Mock()
        tester.test = AsyncMock(return_value="result")

        result = await run_connection_test(
            "integration-1", "test-user-id-123", mock_prisma, tester=tester
        )

        assert result == "result"
        integration = tester.test.call_args.args[0]
        assert integration.id == "integration-1"
        assert integration.headers == {}

    @pytest.mark.asyncio
    async def test_connection_test_waits_for_integration_lock(
        self, mock_prisma: Mock, integration_row: Mock
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)
        tester = Mock()
        tester.test = AsyncMock(return_value="result")
        locks = IntegrationLockRegistry()
        lock = locks.get("integration-1")

        await lock.acquire()
        task = asyncio.create_task(
            run_connection_test(
                "integration-1",
                "test-user-id-123",
                mock_prisma,
                tester=tester,
                locks=locks,
            )
        )
        await asyncio.sleep(0.01)

        assert not task.done()
        tester.test.assert_not_called()

        lock.release()
        assert await task == "result"


class TestCrmSyncService:
    """Live pipelines with mocked CRM clients."""

    @pytest.fixture
    def session_manager(self) -> Mock:
        manager = Mock()
        manager.authenticate = AsyncMock(return_value=make_session({"sid": "1"}))
        return manager

    @pytest.fixture
    def sync_client(self) -> Mock:
        client = Mock()
        client.create_invoice = AsyncMock(
            return_value=SyncResult(externalRef="501", raw="{}", statusCode=200)
        )
        return client

    @pytest.fixture
    def lookup_client(self) -> Mock:
        client = Mock()
        client.find_invoice_pdf = AsyncMock(
            return_value=LookupResult(
                pdfUrl="https://crm.test/pdf/123.pdf", remoteNumber="FS/123/MCG"
            )
        )
        client.download_pdf = AsyncMock(return_value=b"%PDF-1.7")
        return client

    @pytest.fixture
    def service(
        self,
        mock_prisma: Mock,
        integration_row: Mock,
        session_manager: Mock,
        sync_client: Mock,
        lookup_client: Mock,
        tmp_path: Path,
    ) -> CrmSyncService:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=integration_row)
        mock_prisma.crminvoicesync.update = AsyncMock(
            return_value=mock_sync_record(status="synced", externalRef="501")
        )
        return CrmSyncService(
            mock_prisma,
            session_manager=session_manager,
            sync_client=sync_client,
            lookup_client=lookup_client,
            locks=IntegrationLockRegistry(),
            pipeline_timeout=5,
            pdf_dir=str(tmp_path),
        )

    @pytest.mark.asyncio
    async def test_sync_success(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        session_manager: Mock,
        sync_client: Mock,
        sync_context: SyncContext,
    ) -> None:
        request = InvoiceSyncRequest(context=sync_context)

        result = await service.sync_invoice("invoice-1", request, "test-user-id-123")

        assert result.success is True
        assert result.externalRef == "501"
        assert result.sync.status == "synced"
        session_manager.authenticate.assert_awaited_once()
        sync_client.create_invoice.assert_awaited_once()

        # Default integration: oldest active one of the user
        mock_prisma.crmintegration.find_first.assert_called_once_with(
            where={"userId": "test-user-id-123", "isActive": True},
            order={"createdAt": "asc"},
        )
        upsert = mock_prisma.crminvoicesync.upsert.call_args.kwargs["data"]
        assert upsert["create"]["status"] == "pending"
        assert upsert["update"]["attempts"] == {"increment": 1}
        final = mock_prisma.crminvoicesync.update.call_args.kwargs["data"]
        assert final["status"] == "synced"
        assert final["externalRef"] == "501"

    @pytest.mark.asyncio
    async def test_already_synced_invoice_is_refused(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        session_manager: Mock,
        sync_context: SyncContext,
    ) -> None:
        mock_prisma.crminvoicesync.find_unique = AsyncMock(
            return_value=mock_sync_record(status="synced", externalRef="501")
        )

        with pytest.raises(ConflictError) as exc_info:
            await service.sync_invoice(
                "invoice-1",
                InvoiceSyncRequest(context=sync_context),
                "test-user-id-123",
            )

        assert exc_info.value.status_code == 409
        session_manager.authenticate.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_invoice_can_be_synced_again(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        sync_context: SyncContext,
    ) -> None:
        mock_prisma.crminvoicesync.find_unique = AsyncMock(
            return_value=mock_sync_record(status="failed")
        )

        result = await service.sync_invoice(
            "invoice-1", InvoiceSyncRequest(context=sync_context), "test-user-id-123"
        )

        assert result.success is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            CrmAuthError("Login failed with HTTP 401", remote_status=401),
            CrmSyncError("CRM rejected the invoice with HTTP 422", remote_status=422),
            CrmNetworkError("Network error: could not reach crm.test"),
        ],
    )
    async def test_remote_failure_is_recorded(
        self,
        error: Exception,
        service: CrmSyncService,
        mock_prisma: Mock,
        sync_client: Mock,
        sync_context: SyncContext,
    ) -> None:
        sync_client.create_invoice = AsyncMock(side_effect=error)

        with pytest.raises(type(error)):
            await service.sync_invoice(
                "invoice-1",
                InvoiceSyncRequest(context=sync_context),
                "test-user-id-123",
            )

        data = mock_prisma.crminvoicesync.update.call_args.kwargs["data"]
        assert data == {"status": "failed", "lastError": error.message}
        sync_client.create_invoice.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_context_fails_before_login(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        session_manager: Mock,
    ) -> None:
        with pytest.raises(FieldMappingError):
            await service.sync_invoice(
                "invoice-1", InvoiceSyncRequest(context=SyncContext()), "user"
            )

        session_manager.authenticate.assert_not_called()
        mock_prisma.crminvoicesync.upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_syncs_create_one_remote_invoice(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        sync_client: Mock,
        sync_context: SyncContext,
    ) -> None:
        records: Dict[str, Mock] = {}

        async def find_unique(where):
            return records.get("invoice-1")

        async def upsert(where, data):
            return records.setdefault("invoice-1", mock_sync_record())

        async def update(where, data):
            record = records["invoice-1"]
            for field, value in data.items():
                setattr(record, field, value)
            return record

        async def create_invoice(*args):
            await asyncio.sleep(0.01)
            return SyncResult(externalRef="501", raw="{}", statusCode=200)

        mock_prisma.crminvoicesync.find_unique = AsyncMock(side_effect=find_unique)
        mock_prisma.crminvoicesync.upsert = AsyncMock(side_effect=upsert)
        mock_prisma.crminvoicesync.update = AsyncMock(side_effect=update)
        sync_client.create_invoice = AsyncMock(side_effect=create_invoice)
        request = InvoiceSyncRequest(context=sync_context)

        results = await asyncio.gather(
            service.sync_invoice("invoice-1", request, "test-user-id-123"),
            service.sync_invoice("invoice-1", request, "test-user-id-123"),
            return_exceptions=True,
        )

        assert sync_client.create_invoice.await_count == 1
        assert sum(isinstance(r, ConflictError) for r in results) == 1
        assert records["invoice-1"].status == "synced"

    @pytest.mark.asyncio
    async def test_cancelled_sync_releases_lock(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        session_manager: Mock,
        sync_context: SyncContext,
    ) -> None:
        started = asyncio.Event()

        async def stall(integration):
            started.set()
            await asyncio.Event().wait()

        session_manager.authenticate = AsyncMock(side_effect=stall)
        task = asyncio.create_task(
            service.sync_invoice(
                "invoice-1",
                InvoiceSyncRequest(context=sync_context),
                "test-user-id-123",
            )
        )
        await started.wait()
        lock = service.locks.get("integration-1")
        assert lock.locked()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not lock.locked()
        mock_prisma.crminvoicesync.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_mapping_compiled_once_per_integration_version(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        integration_row: Mock,
        sync_client: Mock,
        sync_context: SyncContext,
    ) -> None:
        service.mappings = CompiledMappingCache()
        request = InvoiceSyncRequest(context=sync_context)

        await service.sync_invoice("invoice-1", request, "test-user-id-123")
        await service.sync_invoice("invoice-2", request, "test-user-id-123")
        integration_row.updatedAt = datetime(2026, 2, 1, 9, 0, 0)
        integration_row.fieldMapping = json.dumps({"buyer": "{{client.name}}"})
        await service.sync_invoice("invoice-3", request, "test-user-id-123")

        first, second, third = [
            call.args[3] for call in sync_client.create_invoice.await_args_list
        ]
        assert first is second
        assert third is not first
        assert list(third.fields) == ["buyer"]
        assert len(service.mappings) == 1

    @pytest.mark.asyncio
    async def test_pipeline_timeout(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        session_manager: Mock,
        sync_context: SyncContext,
    ) -> None:
        async def stall(integration):
            await asyncio.sleep(10)

        session_manager.authenticate = AsyncMock(side_effect=stall)
        service.pipeline_timeout = 0.05

        with pytest.raises(CrmNetworkError) as exc_info:
            await service.sync_invoice(
                "invoice-1",
                InvoiceSyncRequest(context=sync_context),
                "test-user-id-123",
            )

        assert exc_info.value.timed_out is True
        data = mock_prisma.crminvoicesync.update.call_args.kwargs["data"]
        assert data["status"] == "failed"

    @pytest.mark.asyncio
    async def test_explicit_inactive_integration(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        test_cipher: CredentialCipher,
        sync_context: SyncContext,
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(
            return_value=mock_integration_row(test_cipher, isActive=False)
        )
        request = InvoiceSyncRequest(
            integrationId="integration-1", context=sync_context
        )

        with pytest.raises(IntegrationConfigurationError):
            await service.sync_invoice("invoice-1", request, "test-user-id-123")

    @pytest.mark.asyncio
    async def test_no_active_integration(
        self, service: CrmSyncService, mock_prisma: Mock, sync_context: SyncContext
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(return_value=None)

        with pytest.raises(IntegrationNotFoundError):
            await service.sync_invoice(
                "invoice-1",
                InvoiceSyncRequest(context=sync_context),
                "test-user-id-123",
            )

    @pytest.mark.asyncio
    async def test_fetch_pdf_downloads_and_records(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        lookup_client: Mock,
        tmp_path: Path,
    ) -> None:
        request = InvoicePdfRequest(invoiceNumber="123")

        result = await service.fetch_invoice_pdf(
            "invoice-1", request, "test-user-id-123"
        )

        expected_path = tmp_path / "crm-invoice-1.pdf"
        assert result.pdfPath == str(expected_path)
        assert expected_path.read_bytes() == b"%PDF-1.7"
        assert result.remoteNumber == "FS/123/MCG"
        lookup_client.find_invoice_pdf.assert_awaited_once()
        assert lookup_client.find_invoice_pdf.call_args.args[2] == "123"
        upsert = mock_prisma.crminvoicesync.upsert.call_args.kwargs["data"]
        assert upsert["update"] == {
            "pdfUrl": "https://crm.test/pdf/123.pdf",
            "pdfPath": str(expected_path),
        }

    @pytest.mark.asyncio
    async def test_fetch_pdf_link_only(
        self, service: CrmSyncService, lookup_client: Mock
    ) -> None:
        request = InvoicePdfRequest(invoiceNumber="123", download=False)

        result = await service.fetch_invoice_pdf(
            "invoice-1", request, "test-user-id-123"
        )

        assert result.pdfUrl == "https://crm.test/pdf/123.pdf"
        assert result.pdfPath is None
        lookup_client.download_pdf.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_pdf_requires_list_url(
        self,
        service: CrmSyncService,
        mock_prisma: Mock,
        test_cipher: CredentialCipher,
        session_manager: Mock,
    ) -> None:
        mock_prisma.crmintegration.find_first = AsyncMock(
            return_value=mock_integration_row(test_cipher, listInvoicesUrl=None)
        )

        with pytest.raises(IntegrationConfigurationError):
            await service.fetch_invoice_pdf(
                "invoice-1", InvoicePdfRequest(invoiceNumber="123"), "test-user-id-123"
            )

        session_manager.authenticate.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_status(
        self, service: CrmSyncService, mock_prisma: Mock
    ) -> None:
        mock_prisma.crminvoicesync.find_first = AsyncMock(
            return_value=mock_sync_record(status="failed", lastError="HTTP 500")
        )

        result = await service.get_sync_status("invoice-1", "test-user-id-123")

        assert result.status == "failed"
        assert result.lastError == "HTTP 500"
        where = mock_prisma.crminvoicesync.find_first.call_args.kwargs["where"]
        assert where["integration"] == {"is": {"userId": "test-user-id-123"}}

    @pytest.mark.asyncio
    async def test_sync_status_missing(
        self, service: CrmSyncService, mock_prisma: Mock
    ) -> None:
        with pytest.raises(SyncRecordNotFoundError):
            await service.get_sync_status("invoice-1", "test-user-id-123")
