import asyncio
import logging
from datetime import timedelta

import pytest

from qbo_connect.errors import (
    AuthorizationCodeError,
    ConfigurationError,
    NoConnection,
    ProviderRejected,
    RequiresReauth,
    TransientFailure,
)
from qbo_connect.metrics import metrics
from qbo_connect.models import ConnectionStatus, CredentialStatus, TokenState
from qbo_connect.services.cipher import TokenCipher
from qbo_connect.services.token_manager import classify


def _run(coro):
    return asyncio.run(coro)


def _connect(manager, tenant_id="user-1", realm_id="realm-1"):
    return _run(manager.create_token("auth-code", tenant_id, realm_id))


def test_create_token_stores_only_ciphertext(manager, credential_store, cipher):
    bearer = _connect(manager)

    record = credential_store.get("user-1")
    assert bearer.access_token == "code-access-1"
    assert record.encrypted_access_token != "code-access-1"
    assert record.encrypted_refresh_token != "code-refresh-1"
    assert cipher.decrypt_access(record.encrypted_access_token) == "code-access-1"
    assert cipher.decrypt_refresh(record.encrypted_refresh_token) == "code-refresh-1"
    assert record.realm_id == "realm-1"
    assert metrics.qbo_connections == 1


def test_token_outside_buffer_is_returned_without_provider_call(manager, provider, clock):
    _connect(manager)
    clock.advance(3000)

    bearer = _run(manager.get_valid_credential("user-1"))

    assert provider.refresh_calls == 0
    assert bearer.access_token == "code-access-1"


def test_token_inside_buffer_is_refreshed(manager, provider, clock, credential_store, cipher):
    _connect(manager)
    clock.advance(3596)

    bearer = _run(manager.get_valid_credential("user-1"))

    assert provider.refresh_calls == 1
    assert provider.refresh_tokens_seen == ["code-refresh-1"]
    assert bearer.access_token == "refreshed-access-1"
    assert bearer.expires_at == clock.now + timedelta(seconds=3600)
    record = credential_store.get("user-1")
    assert cipher.decrypt_refresh(record.encrypted_refresh_token) == "refreshed-refresh-1"
    assert record.refresh_expires_at == clock.now + timedelta(seconds=8_726_400)
    assert metrics.token_refreshes == 1


def test_expired_token_is_refreshed(manager, provider, clock):
    _connect(manager)
    clock.advance(7200)

    bearer = _run(manager.get_valid_credential("user-1"))

    assert provider.refresh_calls == 1
    assert bearer.access_token == "refreshed-access-1"


def test_classify_states(manager, credential_store, clock):
    assert classify(None, clock.now) == TokenState.UNCONNECTED
    _connect(manager)
    record = credential_store.get("user-1")
    assert classify(record, clock.now) == TokenState.ACTIVE
    assert classify(record, clock.now + timedelta(seconds=3400)) == TokenState.EXPIRING_SOON
    assert classify(record, clock.now + timedelta(seconds=3600)) == TokenState.EXPIRED
    assert classify(record.evolve(revoked=True), clock.now) == TokenState.REVOKED
    assert (
        classify(record.evolve(status=CredentialStatus.REAUTH_REQUIRED), clock.now)
        == TokenState.REFRESH_FAILED
    )


def test_single_flight_refresh(manager, provider, clock):
    _connect(manager)
    clock.advance(3596)
    provider.delay = 0.05

    async def scenario():
        return await asyncio.gather(
            *[manager.get_valid_credential("user-1") for _ in range(10)]
        )

    results = _run(scenario())

    assert provider.refresh_calls == 1
    assert {b.access_token for b in results} == {"refreshed-access-1"}
    assert metrics.token_refresh_joined == 9


def test_single_flight_is_per_tenant(manager, provider, clock):
    _connect(manager, "user-1")
    _connect(manager, "user-2")
    clock.advance(3596)
    provider.delay = 0.02

    async def scenario():
        return await asyncio.gather(
            manager.get_valid_credential("user-1"),
            manager.get_valid_credential("user-2"),
        )

    first, second = _run(scenario())

    assert provider.refresh_calls == 2
    assert first.access_token != second.access_token


def test_state_reports_refreshing_while_in_flight(manager, provider, clock):
    _connect(manager)
    clock.advance(3596)
    provider.delay = 0.05

    async def scenario():
        task = asyncio.ensure_future(manager.get_valid_credential("user-1"))
        await asyncio.sleep(0.01)
        during = manager.state("user-1")
        await task
        return during, manager.state("user-1")

    during, after = _run(scenario())

    assert during == TokenState.REFRESHING
    assert after == TokenState.ACTIVE


def test_cancelled_caller_does_not_abort_refresh(manager, provider, clock, credential_store, cipher):
    _connect(manager)
    clock.advance(3596)
    provider.delay = 0.05

    async def scenario():
        task = asyncio.ensure_future(manager.get_valid_credential("user-1"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.1)

    _run(scenario())

    assert provider.refresh_calls == 1
    record = credential_store.get("user-1")
    assert cipher.decrypt_access(record.encrypted_access_token) == "refreshed-access-1"
    assert manager.connection_status("user-1") == ConnectionStatus.ACTIVE


def test_provider_rejection_is_terminal(manager, provider, clock):
    _connect(manager)
    clock.advance(3596)
    provider.refresh_error = ProviderRejected("invalid_grant", 400)

    with pytest.raises(RequiresReauth):
        _run(manager.get_valid_credential("user-1"))
    assert manager.connection_status("user-1") == ConnectionStatus.REQUIRES_REAUTH

    with pytest.raises(RequiresReauth):
        _run(manager.get_valid_credential("user-1"))
    assert provider.refresh_calls == 1
    assert metrics.reauth_required == 1

    # A new authorization clears the terminal state.
    provider.refresh_error = None
    _connect(manager)
    assert manager.connection_status("user-1") == ConnectionStatus.ACTIVE
    bearer = _run(manager.get_valid_credential("user-1"))
    assert bearer.access_token == "code-access-2"


def test_transient_failure_is_not_converted_to_reauth(manager, provider, clock):
    _connect(manager)
    clock.advance(3596)
    provider.refresh_error = TransientFailure("token endpoint returned 503")

    with pytest.raises(TransientFailure):
        _run(manager.get_valid_credential("user-1"))
    assert manager.connection_status("user-1") == ConnectionStatus.ACTIVE

    provider.refresh_error = None
    bearer = _run(manager.get_valid_credential("user-1"))
    assert provider.refresh_calls == 2
    assert bearer.access_token == "refreshed-access-2"


def test_expired_refresh_token_requires_reauth_without_provider_call(
    manager, provider, clock, credential_store
):
    _connect(manager)
    record = credential_store.get("user-1")
    credential_store.put(record.evolve(refresh_expires_at=clock.now + timedelta(hours=2)))
    clock.advance(3 * 3600)

    assert manager.connection_status("user-1") == ConnectionStatus.REQUIRES_REAUTH
    with pytest.raises(RequiresReauth):
        _run(manager.get_valid_credential("user-1"))
    assert provider.refresh_calls == 0


def test_decrypt_error_surfaces_as_reauth_and_is_logged(
    manager, provider, credential_store, caplog
):
    _connect(manager)
    record = credential_store.get("user-1")
    credential_store.put(record.evolve(encrypted_access_token="Z2FyYmFnZQ=="))

    with caplog.at_level(logging.ERROR):
        with pytest.raises(RequiresReauth):
            _run(manager.get_valid_credential("user-1"))

    assert metrics.decrypt_errors == 1
    failures = [r for r in caplog.records if r.getMessage() == "credential_decrypt_failed"]
    assert failures and failures[0].well_formed is False
    assert "Z2FyYmFnZQ==" not in caplog.text
    assert manager.connection_status("user-1") == ConnectionStatus.REQUIRES_REAUTH
    assert provider.refresh_calls == 0


def test_stale_write_returns_newer_token(manager, provider, clock, credential_store, cipher):
    _connect(manager)
    clock.advance(3596)

    def concurrent_writer():
        # Another process finishes its refresh first.
        current = credential_store.get("user-1")
        credential_store.put(
            current.evolve(
                encrypted_access_token=cipher.encrypt_access("other-process-access"),
                encrypted_refresh_token=cipher.encrypt_refresh("other-process-refresh"),
                access_expires_at=clock.now + timedelta(hours=1),
            )
        )

    provider.on_refresh = concurrent_writer

    bearer = _run(manager.get_valid_credential("user-1"))

    assert bearer.access_token == "other-process-access"
    record = credential_store.get("user-1")
    assert cipher.decrypt_access(record.encrypted_access_token) == "other-process-access"
    assert metrics.token_stale_writes == 1


def test_refresh_reuses_token_written_by_another_process(
    manager, provider, clock, credential_store, cipher
):
    _connect(manager)
    clock.advance(3596)
    record = credential_store.get("user-1")
    stale_view = record

    credential_store.put(
        record.evolve(
            encrypted_access_token=cipher.encrypt_access("already-fresh"),
            access_expires_at=clock.now + timedelta(hours=1),
        )
    )
    # The caller observed the stale record; the refresh task re-reads first.
    assert manager.classify(stale_view) == TokenState.EXPIRING_SOON

    bearer = _run(manager._refresh("user-1"))

    assert provider.refresh_calls == 0
    assert bearer.access_token == "already-fresh"


def test_failed_code_exchange_is_not_retried(manager, provider, credential_store):
    provider.exchange_error = ProviderRejected("invalid_grant", 400)

    with pytest.raises(AuthorizationCodeError):
        _connect(manager)

    assert provider.exchange_calls == 1
    assert credential_store.get("user-1") is None


def test_transient_code_exchange_failure_is_authorization_error(manager, provider):
    provider.exchange_error = TransientFailure("unreachable")
    with pytest.raises(AuthorizationCodeError):
        _connect(manager)
    assert provider.exchange_calls == 1


def test_disconnect_then_no_connection(manager, provider):
    _connect(manager)

    assert _run(manager.revoke("user-1")) is True

    assert provider.revoked_tokens == ["code-refresh-1"]
    with pytest.raises(NoConnection):
        _run(manager.get_valid_credential("user-1"))
    assert manager.connection_status("user-1") == ConnectionStatus.UNCONNECTED
    assert _run(manager.revoke("user-1")) is False


def test_unconnected_tenant(manager, provider):
    with pytest.raises(NoConnection):
        _run(manager.get_valid_credential("ghost"))
    assert manager.connection_status("ghost") == ConnectionStatus.UNCONNECTED
    assert manager.state("ghost") == TokenState.UNCONNECTED
    assert provider.refresh_calls == 0


def test_revoked_flag_is_treated_as_no_connection(manager, credential_store):
    _connect(manager)
    record = credential_store.get("user-1")
    credential_store.put(record.evolve(revoked=True))

    with pytest.raises(NoConnection):
        _run(manager.get_valid_credential("user-1"))
    assert manager.connection_status("user-1") == ConnectionStatus.UNCONNECTED


@pytest.mark.parametrize("refresh_error", [None, ProviderRejected("invalid_grant", 400)])
def test_reconnect_during_refresh_keeps_the_new_connection(
    manager, provider, clock, credential_store, cipher, refresh_error
):
    _connect(manager, realm_id="realm-old")
    clock.advance(3596)
    provider.delay = 0.05
    provider.refresh_error = refresh_error

    async def scenario():
        pending = asyncio.ensure_future(manager.get_valid_credential("user-1"))
        await asyncio.sleep(0.01)
        assert await manager.revoke("user-1") is True
        await manager.create_token("code-b", "user-1", "realm-new")
        return await pending

    bearer = _run(scenario())

    assert provider.refresh_calls == 1
    assert bearer.access_token == "code-access-2"
    assert bearer.realm_id == "realm-new"
    record = credential_store.get("user-1")
    assert record.realm_id == "realm-new"
    assert record.status == CredentialStatus.ACTIVE
    assert cipher.decrypt_access(record.encrypted_access_token) == "code-access-2"
    assert manager.connection_status("user-1") == ConnectionStatus.ACTIVE
    assert metrics.reauth_required == 0


def test_client_misconfiguration_does_not_mark_tenant(manager, provider, clock):
    _connect(manager)
    clock.advance(3596)
    provider.refresh_error = ConfigurationError("token endpoint rejected the client: invalid_client")

    with pytest.raises(ConfigurationError):
        _run(manager.get_valid_credential("user-1"))
    assert manager.connection_status("user-1") == ConnectionStatus.ACTIVE
    assert metrics.reauth_required == 0

    provider.refresh_error = None
    bearer = _run(manager.get_valid_credential("user-1"))
    assert bearer.access_token == "refreshed-access-2"


def test_rotated_master_key_is_logged_as_well_formed_blob(
    manager, credential_store, caplog
):
    _connect(manager)
    record = credential_store.get("user-1")
    other_key = TokenCipher("a-different-master-secret", iterations=1000)
    credential_store.put(
        record.evolve(encrypted_access_token=other_key.encrypt_access("code-access-1"))
    )

    with caplog.at_level(logging.ERROR):
        with pytest.raises(RequiresReauth):
            _run(manager.get_valid_credential("user-1"))

    failures = [r for r in caplog.records if r.getMessage() == "credential_decrypt_failed"]
    assert failures[0].well_formed is True
