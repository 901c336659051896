from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..deps import (
    get_api_client,
    get_connection_service,
    get_current_user_id,
    get_optional_team_id,
    get_session_resolver,
    get_team_id,
)
from ..errors import RequiresReauth
from ..models import BearerToken, Capability, ConnectionStatus, Role
from ..services.connection import QuickBooksConnectionService
from ..services.quickbooks_client import (
    CompanyInfo,
    Invoice,
    InvoiceDraft,
    QuickBooksApiClient,
)
from ..services.session_resolver import SessionResolver

router = APIRouter()
logger = logging.getLogger(__name__)


class QboAuthorizeResponse(BaseModel):
    authorization_url: str
    state: str


class QboCallbackResponse(BaseModel):
    connected: bool
    team_id: str
    realm_id: Optional[str] = None
    status: ConnectionStatus


class QboStatusResponse(BaseModel):
    status: ConnectionStatus
    team_id: Optional[str] = None


class QboPermissionsResponse(BaseModel):
    team_id: str
    role: Role
    capabilities: list[Capability]


class QboDisconnectResponse(BaseModel):
    disconnected: bool


class InvoiceListResponse(BaseModel):
    invoices: list[Invoice]
    limit: int
    offset: int


class InvoiceUpdateRequest(BaseModel):
    sync_token: str
    changes: dict[str, Any] = Field(default_factory=dict)


class InvoiceDeleteResponse(BaseModel):
    deleted: bool
    invoice_id: str


def _realm(bearer: BearerToken) -> str:
    if not bearer.realm_id:
        raise RequiresReauth("stored credential has no realm id")
    return bearer.realm_id


@router.get("/authorize", response_model=QboAuthorizeResponse)
def authorize_qbo(
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
) -> QboAuthorizeResponse:
    """Return the Intuit consent URL for the caller's team."""
    redirect = service.begin_authorization(team_id, user_id)
    return QboAuthorizeResponse(authorization_url=redirect.url, state=redirect.state)


@router.get("/callback", response_model=QboCallbackResponse)
async def callback_qbo(
    code: str = Query(...),
    state: Optional[str] = Query(default=None),
    realm_id: Optional[str] = Query(default=None, alias="realmId"),
    user_id: str = Depends(get_current_user_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
) -> QboCallbackResponse:
    result = await service.complete_authorization(code, state, user_id, realm_id)
    return QboCallbackResponse(
        connected=result.status == ConnectionStatus.ACTIVE,
        team_id=result.team_id,
        realm_id=result.realm_id,
        status=result.status,
    )


@router.get("/status", response_model=QboStatusResponse)
def qbo_status(
    user_id: str = Depends(get_current_user_id),
    team_id: Optional[str] = Depends(get_optional_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
) -> QboStatusResponse:
    if team_id is None:
        return QboStatusResponse(status=service.connection_status(user_id))
    return QboStatusResponse(
        status=service.team_connection_status(team_id, user_id, resolver),
        team_id=team_id,
    )


@router.get("/permissions", response_model=QboPermissionsResponse)
def qbo_permissions(
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
) -> QboPermissionsResponse:
    role, capabilities = service.member_permissions(team_id, user_id)
    return QboPermissionsResponse(
        team_id=team_id,
        role=role,
        capabilities=sorted(capabilities, key=lambda c: c.value),
    )


@router.post("/disconnect", response_model=QboDisconnectResponse)
async def disconnect_qbo(
    user_id: str = Depends(get_current_user_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
) -> QboDisconnectResponse:
    removed = await service.disconnect(user_id)
    return QboDisconnectResponse(disconnected=removed)


@router.get(
    "/invoices", response_model=InvoiceListResponse, response_model_by_alias=False
)
async def list_invoices(
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
    api: QuickBooksApiClient = Depends(get_api_client),
) -> InvoiceListResponse:
    async def _op(bearer: BearerToken):
        return await api.query(
            _realm(bearer), bearer.access_token, "Invoice", limit=limit, offset=offset
        )

    invoices = await service.run_guarded(
        user_id,
        team_id,
        Capability.VIEW_INVOICES,
        "invoice.list",
        "invoice",
        None,
        {"limit": limit, "offset": offset},
        _op,
        resolver=resolver,
    )
    return InvoiceListResponse(invoices=invoices, limit=limit, offset=offset)


@router.get(
    "/invoices/{invoice_id}", response_model=Invoice, response_model_by_alias=False
)
async def get_invoice(
    invoice_id: str,
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
    api: QuickBooksApiClient = Depends(get_api_client),
) -> Invoice:
    async def _op(bearer: BearerToken):
        return await api.get_invoice(_realm(bearer), bearer.access_token, invoice_id)

    return await service.run_guarded(
        user_id,
        team_id,
        Capability.VIEW_INVOICES,
        "invoice.read",
        "invoice",
        invoice_id,
        None,
        _op,
        resolver=resolver,
    )


@router.post("/invoices", response_model=Invoice, response_model_by_alias=False)
async def create_invoice(
    draft: InvoiceDraft,
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
    api: QuickBooksApiClient = Depends(get_api_client),
) -> Invoice:
    async def _op(bearer: BearerToken):
        return await api.create_invoice(_realm(bearer), bearer.access_token, draft)

    return await service.run_guarded(
        user_id,
        team_id,
        Capability.EDIT_INVOICES,
        "invoice.create",
        "invoice",
        None,
        draft.model_dump(),
        _op,
        resolver=resolver,
    )


@router.post(
    "/invoices/{invoice_id}", response_model=Invoice, response_model_by_alias=False
)
async def update_invoice(
    invoice_id: str,
    body: InvoiceUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
    api: QuickBooksApiClient = Depends(get_api_client),
) -> Invoice:
    async def _op(bearer: BearerToken):
        return await api.update_invoice(
            _realm(bearer), bearer.access_token, invoice_id, body.sync_token, body.changes
        )

    return await service.run_guarded(
        user_id,
        team_id,
        Capability.EDIT_INVOICES,
        "invoice.update",
        "invoice",
        invoice_id,
        body.model_dump(),
        _op,
        resolver=resolver,
    )


@router.delete("/invoices/{invoice_id}", response_model=InvoiceDeleteResponse)
async def delete_invoice(
    invoice_id: str,
    sync_token: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
    api: QuickBooksApiClient = Depends(get_api_client),
) -> InvoiceDeleteResponse:
    async def _op(bearer: BearerToken):
        await api.delete_invoice(_realm(bearer), bearer.access_token, invoice_id, sync_token)

    await service.run_guarded(
        user_id,
        team_id,
        Capability.DELETE_INVOICES,
        "invoice.delete",
        "invoice",
        invoice_id,
        {"sync_token": sync_token},
        _op,
        resolver=resolver,
    )
    return InvoiceDeleteResponse(deleted=True, invoice_id=invoice_id)


@router.get("/company", response_model=CompanyInfo, response_model_by_alias=False)
async def company_info(
    user_id: str = Depends(get_current_user_id),
    team_id: str = Depends(get_team_id),
    service: QuickBooksConnectionService = Depends(get_connection_service),
    resolver: SessionResolver = Depends(get_session_resolver),
    api: QuickBooksApiClient = Depends(get_api_client),
) -> CompanyInfo:
    async def _op(bearer: BearerToken):
        return await api.company_info(_realm(bearer), bearer.access_token)

    return await service.run_guarded(
        user_id,
        team_id,
        Capability.VIEW_INVOICES,
        "company.read",
        "company",
        None,
        None,
        _op,
        resolver=resolver,
    )
