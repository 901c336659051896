import asyncio
import json

import httpx
import pytest

from qbo_connect.config import QuickBooksSettings
from qbo_connect.errors import (
    ConfigurationError,
    ProviderRejected,
    QuickBooksApiError,
    RequiresReauth,
    TransientFailure,
)
from qbo_connect.services.quickbooks_client import (
    CompanyInfo,
    IntuitOAuthClient,
    Invoice,
    InvoiceDraft,
    InvoiceLine,
    QuickBooksApiClient,
    parse_entity,
)

SETTINGS = QuickBooksSettings(
    client_id="cid",
    client_secret="csecret",
    redirect_uri="https://app.example.com/qbo/callback",
    sandbox=True,
)


def _run(coro):
    return asyncio.run(coro)


def _factory(handler, seen=None):
    def wrapped(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return handler(request)

    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(wrapped))


def _token_body(**overrides):
    body = {
        "access_token": "new-access",
        "refresh_token": "new-refresh",
        "expires_in": 3600,
        "x_refresh_token_expires_in": 8726400,
        "token_type": "bearer",
    }
    body.update(overrides)
    return body


def test_refresh_posts_grant_with_basic_auth():
    seen = []
    client = IntuitOAuthClient(
        SETTINGS, _factory(lambda r: httpx.Response(200, json=_token_body()), seen)
    )

    tokens = _run(client.refresh("old-refresh"))

    assert tokens.access_token == "new-access"
    assert tokens.x_refresh_token_expires_in == 8726400
    request = seen[0]
    assert str(request.url) == SETTINGS.token_base
    assert request.headers["Authorization"].startswith("Basic ")
    form = dict(pair.split("=") for pair in request.content.decode().split("&"))
    assert form == {"grant_type": "refresh_token", "refresh_token": "old-refresh"}
    assert "new-access" not in repr(tokens)


@pytest.mark.parametrize("status", [400, 401])
def test_refresh_rejection_is_provider_rejected(status):
    client = IntuitOAuthClient(
        SETTINGS,
        _factory(lambda r: httpx.Response(status, json={"error": "invalid_grant"})),
    )
    with pytest.raises(ProviderRejected) as excinfo:
        _run(client.refresh("dead"))
    assert excinfo.value.error == "invalid_grant"
    assert excinfo.value.status == status


@pytest.mark.parametrize("status", [500, 502, 503])
def test_refresh_server_error_is_transient(status):
    client = IntuitOAuthClient(SETTINGS, _factory(lambda r: httpx.Response(status)))
    with pytest.raises(TransientFailure):
        _run(client.refresh("token"))


def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = IntuitOAuthClient(SETTINGS, _factory(handler))
    with pytest.raises(TransientFailure):
        _run(client.refresh("token"))


def test_exchange_code_sends_redirect_uri():
    seen = []
    client = IntuitOAuthClient(
        SETTINGS, _factory(lambda r: httpx.Response(200, json=_token_body()), seen)
    )
    _run(client.exchange_code("the-code"))
    body = seen[0].content.decode()
    assert "grant_type=authorization_code" in body
    assert "code=the-code" in body
    assert "redirect_uri=https%3A%2F%2Fapp.example.com%2Fqbo%2Fcallback" in body


def test_unconfigured_client_refuses_to_build_urls():
    client = IntuitOAuthClient(QuickBooksSettings())
    with pytest.raises(ConfigurationError):
        client.authorization_url("state")
    assert _run(client.revoke("token")) is False


def test_revoke_is_best_effort():
    ok = IntuitOAuthClient(SETTINGS, _factory(lambda r: httpx.Response(200)))
    failing = IntuitOAuthClient(SETTINGS, _factory(lambda r: httpx.Response(400)))
    assert _run(ok.revoke("refresh")) is True
    assert _run(failing.revoke("refresh")) is False


def test_query_invoices_parses_typed_models():
    seen = []
    payload = {
        "QueryResponse": {
            "Invoice": [
                {
                    "Id": "130",
                    "SyncToken": "0",
                    "DocNumber": "1037",
                    "TotalAmt": 362.07,
                    "CustomerRef": {"value": "3", "name": "Cool Cars"},
                    "Line": [{"Amount": 362.07, "DetailType": "SalesItemLineDetail"}],
                }
            ]
        }
    }
    api = QuickBooksApiClient(
        SETTINGS, _factory(lambda r: httpx.Response(200, json=payload), seen)
    )

    invoices = _run(api.query("realm-1", "bearer-value", "Invoice", limit=10, offset=20))

    assert len(invoices) == 1
    invoice = invoices[0]
    assert isinstance(invoice, Invoice)
    assert invoice.kind == "Invoice"
    assert invoice.id == "130"
    assert invoice.customer_ref.name == "Cool Cars"
    request = seen[0]
    assert request.headers["Authorization"] == "Bearer bearer-value"
    assert request.url.path == "/v3/company/realm-1/query"
    assert request.url.params["minorversion"] == "65"
    assert "STARTPOSITION 21 MAXRESULTS 10" in request.url.params["query"]


def test_fault_payload_becomes_api_error():
    fault = {"Fault": {"Error": [{"Message": "Object Not Found", "code": "610"}], "type": "ValidationFault"}}
    api = QuickBooksApiClient(SETTINGS, _factory(lambda r: httpx.Response(400, json=fault)))
    with pytest.raises(QuickBooksApiError) as excinfo:
        _run(api.get_invoice("realm-1", "bearer", "999"))
    assert excinfo.value.status == 400
    assert "Object Not Found" in str(excinfo.value)


def test_resource_401_requires_reauth_and_5xx_is_transient():
    unauthorized = QuickBooksApiClient(SETTINGS, _factory(lambda r: httpx.Response(401)))
    with pytest.raises(RequiresReauth):
        _run(unauthorized.company_info("realm-1", "bearer"))

    down = QuickBooksApiClient(SETTINGS, _factory(lambda r: httpx.Response(503)))
    with pytest.raises(TransientFailure):
        _run(down.company_info("realm-1", "bearer"))


def test_create_and_delete_invoice_bodies():
    seen = []

    def handler(request):
        return httpx.Response(200, json={"Invoice": {"Id": "200", "SyncToken": "1"}})

    api = QuickBooksApiClient(SETTINGS, _factory(handler, seen))
    draft = InvoiceDraft(customer_id="3", lines=[InvoiceLine(Amount=50.0, Description="Work")])

    created = _run(api.create_invoice("realm-1", "bearer", draft))
    _run(api.delete_invoice("realm-1", "bearer", "200", "1"))

    assert created.id == "200"
    create_body = json.loads(seen[0].content)
    assert create_body["CustomerRef"] == {"value": "3"}
    assert create_body["Line"][0]["Amount"] == 50.0
    assert seen[1].url.params["operation"] == "delete"
    assert json.loads(seen[1].content) == {"Id": "200", "SyncToken": "1"}


def test_parse_entity_rejects_wrong_shapes():
    assert isinstance(
        parse_entity("CompanyInfo", {"CompanyInfo": {"CompanyName": "Acme"}}), CompanyInfo
    )
    with pytest.raises(QuickBooksApiError):
        parse_entity("Invoice", {"Customer": {}})
    with pytest.raises(QuickBooksApiError):
        parse_entity("Bill", {"Bill": {}})


@pytest.mark.parametrize("error", ["invalid_client", "unauthorized_client"])
def test_client_credential_errors_are_configuration_errors(error):
    client = IntuitOAuthClient(
        SETTINGS, _factory(lambda r: httpx.Response(401, json={"error": error}))
    )
    with pytest.raises(ConfigurationError):
        _run(client.refresh("still-valid-refresh"))


def test_unexplained_client_error_is_transient():
    client = IntuitOAuthClient(SETTINGS, _factory(lambda r: httpx.Response(400, text="oops")))
    with pytest.raises(TransientFailure):
        _run(client.refresh("token"))
