# src/domains/crm_integrations/routes.py
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from src.core.database import get_db
from src.domains.auth.dependencies import get_current_user_id
from src.domains.crm_integrations.models import (
    IntegrationCreate,
    IntegrationResponse,
    IntegrationUpdate,
    InvoicePdfRequest,
    InvoicePdfResponse,
    InvoiceSyncRequest,
    InvoiceSyncResponse,
    InvoiceSyncStatusResponse,
    ParseCurlRequestBody,
    ParseCurlResult,
    PlaceholderInfo,
    TestConnectionResult,
)
from src.domains.crm_integrations.placeholders import CATALOG_VERSION
from src.domains.crm_integrations.service import (
    CrmSyncService,
    create_integration,
    delete_integration,
    get_integration,
    get_placeholders,
    list_integrations,
    parse_curl,
    run_connection_test,
    update_integration,
)

# Integration settings
router = APIRouter(prefix="/crm-integrations", tags=["CRM Integrations"])

# Live invoice pipelines
sync_router = APIRouter(prefix="/crm-sync", tags=["CRM Sync"])

CATALOG_VERSION_HEADER = "X-Placeholder-Catalog-Version"


@router.get(
    "",
    response_model=List[IntegrationResponse],
    operation_id="getCrmIntegrations",
)
async def get_crm_integrations(
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> List[IntegrationResponse]:
    """
    List the user's CRM integrations, active first.

    Passwords are never returned; `hasCredential` tells whether one is stored.
    """
    return await list_integrations(user_id, db)


@router.get(
    "/placeholders",
    response_model=Dict[str, PlaceholderInfo],
    operation_id="getCrmPlaceholders",
)
async def get_crm_placeholders(
    response: Response,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, PlaceholderInfo]:
    """
    Placeholder tokens available in field mappings.

    The catalog version is sent in the `X-Placeholder-Catalog-Version` header
    so clients can tell when their cached token list is stale.
    """
    response.headers[CATALOG_VERSION_HEADER] = str(CATALOG_VERSION)
    return get_placeholders()


@router.post(
    "/parse-curl",
    response_model=ParseCurlResult,
    operation_id="parseCrmCurl",
)
async def parse_crm_curl(
    body: ParseCurlRequestBody,
    user_id: str = Depends(get_current_user_id),
) -> ParseCurlResult:
    """
    Parse a request copied from the browser ("Copy as cURL") into a draft
    integration request with suggested placeholders.

    Parse failures are reported in the result, not as an HTTP error.
    """
    return parse_curl(body.curlCommand)


@router.get(
    "/{integration_id}",
    response_model=IntegrationResponse,
    operation_id="getCrmIntegration",
)
async def get_crm_integration(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> IntegrationResponse:
    return await get_integration(integration_id, user_id, db)


@router.post(
    "",
    response_model=IntegrationResponse,
    status_code=status.HTTP_201_CREATED,
    operation_id="createCrmIntegration",
)
async def create_crm_integration(
    request: IntegrationCreate,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> IntegrationResponse:
    """
    Create a CRM integration.

    The password is encrypted before storage and the field mapping is
    validated against the placeholder catalog.
    """
    return await create_integration(request, user_id, db)


@router.put(
    "/{integration_id}",
    response_model=IntegrationResponse,
    operation_id="updateCrmIntegration",
)
async def update_crm_integration(
    integration_id: str,
    request: IntegrationUpdate,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> IntegrationResponse:
    """Update a CRM integration. Omit `password` to keep the stored one."""
    return await update_integration(integration_id, request, user_id, db)


@router.delete(
    "/{integration_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    operation_id="deleteCrmIntegration",
)
async def delete_crm_integration(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> None:
    await delete_integration(integration_id, user_id, db)


@router.post(
    "/{integration_id}/test",
    response_model=TestConnectionResult,
    operation_id="testCrmIntegration",
)
async def check_crm_connection(
    integration_id: str,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> TestConnectionResult:
    """
    Log in to the CRM with the stored credentials.

    Only the login handshake runs; nothing is created remotely.
    """
    return await run_connection_test(integration_id, user_id, db)


@sync_router.post(
    "/invoices/{invoice_id}",
    response_model=InvoiceSyncResponse,
    operation_id="syncInvoiceToCrm",
)
async def sync_invoice_to_crm(
    invoice_id: str,
    request: InvoiceSyncRequest,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> InvoiceSyncResponse:
    """
    Create the invoice in the CRM.

    Uses the requested integration or the oldest active one. An invoice
    already synced to that integration is refused with 409. Failures are
    recorded on the sync record and never retried automatically.
    """
    return await CrmSyncService(db).sync_invoice(invoice_id, request, user_id)


@sync_router.post(
    "/invoices/{invoice_id}/pdf",
    response_model=InvoicePdfResponse,
    operation_id="fetchCrmInvoicePdf",
)
async def fetch_crm_invoice_pdf(
    invoice_id: str,
    request: InvoicePdfRequest,
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> InvoicePdfResponse:
    """
    Find the CRM's copy of the invoice by its number and download the PDF.

    Requires the integration to have an invoice list URL.
    """
    return await CrmSyncService(db).fetch_invoice_pdf(invoice_id, request, user_id)


@sync_router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceSyncStatusResponse,
    operation_id="getCrmInvoiceSyncStatus",
)
async def get_crm_invoice_sync_status(
    invoice_id: str,
    integration_id: Optional[str] = Query(
        None, alias="integrationId", description="Limit to one integration"
    ),
    user_id: str = Depends(get_current_user_id),
    db=Depends(get_db),
) -> InvoiceSyncStatusResponse:
    return await CrmSyncService(db).get_sync_status(invoice_id, user_id, integration_id)
