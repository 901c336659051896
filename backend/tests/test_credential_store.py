from datetime import UTC, datetime, timedelta

import pytest

from qbo_connect.errors import StaleWriteError
from qbo_connect.models import CredentialRecord, CredentialStatus
from qbo_connect.services.credential_store import (
    InMemoryCredentialStore,
    SqlCredentialStore,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _record(tenant_id: str = "user-1", **overrides) -> CredentialRecord:
    values = dict(
        tenant_id=tenant_id,
        encrypted_access_token="enc-access",
        encrypted_refresh_token="enc-refresh",
        realm_id="realm-1",
        access_expires_at=NOW + timedelta(hours=1),
        refresh_expires_at=NOW + timedelta(days=100),
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return CredentialRecord(**values)


@pytest.fixture(params=["memory", "sql"])
def store(request, session_factory):
    if request.param == "memory":
        return InMemoryCredentialStore()
    return SqlCredentialStore(session_factory)


def test_get_missing_returns_none(store):
    assert store.get("nobody") is None


def test_put_then_get_round_trips_and_bumps_version(store):
    first = store.put(_record())
    assert first.version == 1
    loaded = store.get("user-1")
    assert loaded is not None
    assert loaded.encrypted_access_token == "enc-access"
    assert loaded.realm_id == "realm-1"
    assert loaded.access_expires_at == NOW + timedelta(hours=1)
    assert loaded.status == CredentialStatus.ACTIVE

    second = store.put(loaded.evolve(encrypted_access_token="enc-access-2"))
    assert second.version == 2
    assert store.get("user-1").encrypted_access_token == "enc-access-2"


def test_one_record_per_tenant(store):
    store.put(_record())
    store.put(_record(encrypted_access_token="replaced"))
    store.put(_record("user-2"))
    assert store.get("user-1").encrypted_access_token == "replaced"
    assert store.get("user-2").encrypted_access_token == "enc-access"


def test_expected_version_guard_rejects_stale_write(store):
    stored = store.put(_record())
    store.put(stored.evolve(encrypted_access_token="newer"))

    with pytest.raises(StaleWriteError) as excinfo:
        store.put(stored.evolve(encrypted_access_token="stale"), expected_version=stored.version)
    assert excinfo.value.tenant_id == "user-1"
    assert store.get("user-1").encrypted_access_token == "newer"


def test_expected_version_guard_accepts_current_version(store):
    stored = store.put(_record())
    updated = store.put(
        stored.evolve(encrypted_access_token="fresh"), expected_version=stored.version
    )
    assert updated.version == stored.version + 1


def test_guard_rejects_writes_from_before_a_reconnect(store):
    old = store.put(_record(realm_id="realm-old"))
    store.delete("user-1")
    fresh = store.put(_record(realm_id="realm-new"))
    # Same version number, different connection.
    assert fresh.version == old.version
    assert fresh.connection_id != old.connection_id

    with pytest.raises(StaleWriteError):
        store.put(old.evolve(encrypted_access_token="stale"), expected_version=old.version)
    with pytest.raises(StaleWriteError):
        store.put(old.evolve(), expected_version=0)

    kept = store.get("user-1")
    assert kept.realm_id == "realm-new"
    assert kept.connection_id == fresh.connection_id


def test_delete_is_idempotent(store):
    store.put(_record())
    store.delete("user-1")
    store.delete("user-1")
    store.delete("never-existed")
    assert store.get("user-1") is None


def test_created_at_survives_updates(store):
    stored = store.put(_record())
    later = NOW + timedelta(hours=2)
    store.put(stored.evolve(created_at=later, updated_at=later))
    assert store.get("user-1").created_at == NOW


def test_purge_revoked_only_removes_old_revoked_rows(store):
    store.put(_record("active"))
    store.put(_record("revoked-old", revoked=True, updated_at=NOW - timedelta(days=10)))
    store.put(_record("revoked-new", revoked=True, updated_at=NOW))

    removed = store.purge_revoked(NOW - timedelta(days=1))

    assert removed == 1
    assert store.get("revoked-old") is None
    assert store.get("revoked-new") is not None
    assert store.get("active") is not None


def test_in_memory_store_returns_copies():
    store = InMemoryCredentialStore()
    store.put(_record())
    loaded = store.get("user-1")
    loaded.encrypted_access_token = "mutated"
    assert store.get("user-1").encrypted_access_token == "enc-access"
