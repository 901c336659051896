from __future__ import annotations

import logging
from typing import Any, Callable, Literal, Optional, Union
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import QuickBooksSettings
from ..errors import (
    ConfigurationError,
    ProviderRejected,
    QuickBooksApiError,
    RequiresReauth,
    TransientFailure,
)
from ..metrics import metrics

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]

# OAuth error codes that point at this app's registration rather than the grant.
CLIENT_CONFIG_ERRORS = frozenset(
    {"invalid_client", "unauthorized_client", "unsupported_grant_type", "invalid_scope"}
)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int = 3600
    x_refresh_token_expires_in: Optional[int] = None
    token_type: str = "bearer"

    def __repr__(self) -> str:
        return (
            f"TokenResponse(expires_in={self.expires_in}, "
            f"x_refresh_token_expires_in={self.x_refresh_token_expires_in})"
        )


class _QboModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Ref(_QboModel):
    value: str
    name: Optional[str] = None


class InvoiceLine(_QboModel):
    amount: float = Field(alias="Amount")
    detail_type: str = Field(default="SalesItemLineDetail", alias="DetailType")
    description: Optional[str] = Field(default=None, alias="Description")
    sales_item_line_detail: Optional[dict[str, Any]] = Field(
        default=None, alias="SalesItemLineDetail"
    )


class Invoice(_QboModel):
    kind: Literal["Invoice"] = "Invoice"
    id: Optional[str] = Field(default=None, alias="Id")
    sync_token: Optional[str] = Field(default=None, alias="SyncToken")
    doc_number: Optional[str] = Field(default=None, alias="DocNumber")
    txn_date: Optional[str] = Field(default=None, alias="TxnDate")
    due_date: Optional[str] = Field(default=None, alias="DueDate")
    total_amt: Optional[float] = Field(default=None, alias="TotalAmt")
    balance: Optional[float] = Field(default=None, alias="Balance")
    customer_ref: Optional[Ref] = Field(default=None, alias="CustomerRef")
    line: list[InvoiceLine] = Field(default_factory=list, alias="Line")


class Customer(_QboModel):
    kind: Literal["Customer"] = "Customer"
    id: Optional[str] = Field(default=None, alias="Id")
    display_name: Optional[str] = Field(default=None, alias="DisplayName")
    balance: Optional[float] = Field(default=None, alias="Balance")


class Item(_QboModel):
    kind: Literal["Item"] = "Item"
    id: Optional[str] = Field(default=None, alias="Id")
    name: Optional[str] = Field(default=None, alias="Name")
    unit_price: Optional[float] = Field(default=None, alias="UnitPrice")


class CompanyInfo(_QboModel):
    kind: Literal["CompanyInfo"] = "CompanyInfo"
    id: Optional[str] = Field(default=None, alias="Id")
    company_name: Optional[str] = Field(default=None, alias="CompanyName")
    legal_name: Optional[str] = Field(default=None, alias="LegalName")


QboEntity = Union[Invoice, Customer, Item, CompanyInfo]
ENTITY_TYPES: dict[str, type[_QboModel]] = {
    "Invoice": Invoice,
    "Customer": Customer,
    "Item": Item,
    "CompanyInfo": CompanyInfo,
}


class InvoiceDraft(BaseModel):
    customer_id: str
    lines: list[InvoiceLine]
    due_date: Optional[str] = None
    doc_number: Optional[str] = None

    def to_qbo(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "CustomerRef": {"value": self.customer_id},
            "Line": [line.model_dump(by_alias=True, exclude_none=True) for line in self.lines],
        }
        if self.due_date:
            body["DueDate"] = self.due_date
        if self.doc_number:
            body["DocNumber"] = self.doc_number
        return body


def parse_entity(entity_type: str, payload: dict[str, Any]) -> QboEntity:
    """Map ``{"Invoice": {...}}`` style bodies onto typed models."""
    model = ENTITY_TYPES.get(entity_type)
    if model is None:
        raise QuickBooksApiError(f"unsupported entity type {entity_type}")
    raw = payload.get(entity_type)
    if not isinstance(raw, dict):
        raise QuickBooksApiError(f"response missing {entity_type}")
    try:
        return model.model_validate(raw)  # type: ignore[return-value]
    except ValidationError as exc:
        raise QuickBooksApiError(f"malformed {entity_type} payload") from exc


def parse_query(entity_type: str, payload: dict[str, Any]) -> list[QboEntity]:
    model = ENTITY_TYPES[entity_type]
    rows = (payload.get("QueryResponse") or {}).get(entity_type) or []
    try:
        return [model.model_validate(row) for row in rows]  # type: ignore[misc]
    except ValidationError as exc:
        raise QuickBooksApiError(f"malformed {entity_type} query payload") from exc


class FaultError(_QboModel):
    message: Optional[str] = Field(default=None, alias="Message")
    detail: Optional[str] = Field(default=None, alias="Detail")
    code: Optional[str] = None


class Fault(_QboModel):
    errors: list[FaultError] = Field(default_factory=list, alias="Error")
    type: Optional[str] = None

    def summary(self) -> str:
        if self.errors:
            first = self.errors[0]
            return first.message or first.code or "fault"
        return "fault"


def _fault_message(payload: Any) -> str | None:
    if not isinstance(payload, dict) or not payload.get("Fault"):
        return None
    try:
        return Fault.model_validate(payload["Fault"]).summary()
    except ValidationError:
        return "fault"


def _oauth_error(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return "unknown"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return "unknown"


class IntuitOAuthClient:
    """Token endpoint boundary: authorization URL, code exchange, refresh, revoke."""

    def __init__(
        self,
        settings: QuickBooksSettings,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        )

    def _require_configured(self) -> None:
        if not self._settings.configured:
            raise ConfigurationError("QuickBooks OAuth credentials are not configured")

    def authorization_url(self, state: str) -> str:
        self._require_configured()
        params = {
            "client_id": self._settings.client_id,
            "redirect_uri": self._settings.redirect_uri,
            "response_type": "code",
            "scope": self._settings.scopes,
            "state": state,
        }
        return f"{self._settings.authorize_base}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str]) -> TokenResponse:
        self._require_configured()
        auth = (self._settings.client_id or "", self._settings.client_secret or "")
        try:
            async with self._client_factory() as client:
                resp = await client.post(
                    self._settings.token_base,
                    data=data,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError as exc:
            logger.warning(
                "qbo_token_endpoint_unreachable",
                extra={"grant_type": data.get("grant_type"), "error": type(exc).__name__},
            )
            raise TransientFailure("token endpoint unreachable") from exc

        if resp.status_code in {400, 401}:
            error = _oauth_error(resp)
            grant_type = data.get("grant_type")
            if error == "invalid_grant":
                raise ProviderRejected(error, resp.status_code)
            if error in CLIENT_CONFIG_ERRORS:
                # The app's own credentials are wrong; no tenant is at fault.
                logger.error(
                    "qbo_token_client_rejected",
                    extra={"grant_type": grant_type, "error": error, "status": resp.status_code},
                )
                raise ConfigurationError(f"token endpoint rejected the client: {error}")
            logger.warning(
                "qbo_token_endpoint_failed",
                extra={"grant_type": grant_type, "error": error, "status": resp.status_code},
            )
            raise TransientFailure(f"token endpoint returned {resp.status_code} ({error})")
        if resp.status_code != 200:
            logger.warning(
                "qbo_token_endpoint_failed",
                extra={"grant_type": data.get("grant_type"), "status": resp.status_code},
            )
            raise TransientFailure(f"token endpoint returned {resp.status_code}")
        try:
            return TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            # A 200 without usable tokens is a provider fault, not a grant rejection.
            raise TransientFailure("token endpoint returned an unusable body") from exc

    async def exchange_code(self, code: str) -> TokenResponse:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.redirect_uri or "",
            }
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def revoke(self, token: str) -> bool:
        """Best-effort revocation; returns False instead of raising."""
        if not self._settings.configured:
            return False
        auth = (self._settings.client_id or "", self._settings.client_secret or "")
        try:
            async with self._client_factory() as client:
                resp = await client.post(
                    self._settings.revoke_base,
                    json={"token": token},
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.TransportError:
            logger.warning("qbo_revoke_unreachable", exc_info=True)
            return False
        if resp.status_code != 200:
            logger.warning("qbo_revoke_failed", extra={"status": resp.status_code})
            return False
        return True


class QuickBooksApiClient:
    """Resource calls against the accounting API using a bearer value."""

    def __init__(
        self,
        settings: QuickBooksSettings,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        )

    def _url(self, realm_id: str, path: str) -> str:
        return f"{self._settings.api_base}/v3/company/{realm_id}/{path}"

    async def _request(
        self,
        method: str,
        realm_id: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = {"minorversion": self._settings.minor_version}
        if params:
            query.update(params)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        try:
            async with self._client_factory() as client:
                resp = await client.request(
                    method,
                    self._url(realm_id, path),
                    params=query,
                    headers=headers,
                    json=json,
                )
        except httpx.TransportError as exc:
            metrics.qbo_api_errors += 1
            raise TransientFailure("QuickBooks API unreachable") from exc

        if resp.status_code == 401:
            metrics.qbo_api_errors += 1
            raise RequiresReauth("QuickBooks rejected the bearer token")
        if resp.status_code >= 500 or resp.status_code == 429:
            metrics.qbo_api_errors += 1
            raise TransientFailure(f"QuickBooks API returned {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            metrics.qbo_api_errors += 1
            raise QuickBooksApiError("QuickBooks API returned non-JSON", resp.status_code) from exc
        fault = _fault_message(payload)
        if resp.status_code >= 400 or fault:
            metrics.qbo_api_errors += 1
            logger.warning(
                "qbo_api_fault",
                extra={"path": path, "status": resp.status_code, "fault": fault},
            )
            raise QuickBooksApiError(fault or "QuickBooks API error", resp.status_code)
        return payload

    async def query(
        self,
        realm_id: str,
        access_token: str,
        entity_type: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[QboEntity]:
        if entity_type not in ENTITY_TYPES:
            raise QuickBooksApiError(f"unsupported entity type {entity_type}")
        statement = (
            f"SELECT * FROM {entity_type} STARTPOSITION {offset + 1} MAXRESULTS {limit}"
        )
        payload = await self._request(
            "GET", realm_id, "query", access_token, params={"query": statement}
        )
        return parse_query(entity_type, payload)

    async def get_invoice(self, realm_id: str, access_token: str, invoice_id: str) -> Invoice:
        payload = await self._request("GET", realm_id, f"invoice/{invoice_id}", access_token)
        return parse_entity("Invoice", payload)  # type: ignore[return-value]

    async def create_invoice(
        self, realm_id: str, access_token: str, draft: InvoiceDraft
    ) -> Invoice:
        payload = await self._request(
            "POST", realm_id, "invoice", access_token, json=draft.to_qbo()
        )
        return parse_entity("Invoice", payload)  # type: ignore[return-value]

    async def update_invoice(
        self,
        realm_id: str,
        access_token: str,
        invoice_id: str,
        sync_token: str,
        changes: dict[str, Any],
    ) -> Invoice:
        body = dict(changes)
        body.update({"Id": invoice_id, "SyncToken": sync_token, "sparse": True})
        payload = await self._request("POST", realm_id, "invoice", access_token, json=body)
        return parse_entity("Invoice", payload)  # type: ignore[return-value]

    async def delete_invoice(
        self, realm_id: str, access_token: str, invoice_id: str, sync_token: str
    ) -> None:
        await self._request(
            "POST",
            realm_id,
            "invoice",
            access_token,
            params={"operation": "delete"},
            json={"Id": invoice_id, "SyncToken": sync_token},
        )

    async def company_info(self, realm_id: str, access_token: str) -> CompanyInfo:
        payload = await self._request(
            "GET", realm_id, f"companyinfo/{realm_id}", access_token
        )
        return parse_entity("CompanyInfo", payload)  # type: ignore[return-value]
