"""
Tests for session persistence: round trips, expiry, encryption at rest,
backups and cleanup, across the memory, file and redis backends.
"""

import json
from datetime import timedelta
from decimal import Decimal

import fakeredis
import pytest

from formation_engine.core.exceptions import (
    BackupCorruptedError,
    BackupNotFoundError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionStorageError,
    UnencryptedRecordError,
)
from formation_engine.domain.schemas import (
    CostBreakdown,
    PaymentMethod,
    PaymentRecord,
    SessionStatus,
    utcnow,
)
from formation_engine.infrastructure import (
    FileSessionBackend,
    RedisSessionBackend,
    SessionStore,
    build_session_store,
    clear_sensitive_data,
    generate_session_id,
)

from .conftest import complete_session, shareholder


def populated(session):
    session.shareholders = [shareholder(100, tax_id="123-45-6789")]
    session.payment = PaymentRecord(
        transaction_id="txn_1",
        amount=Decimal("189"),
        method=PaymentMethod.CARD,
        instrument="4242424242424242",
        breakdown=CostBreakdown(
            state_fee=Decimal("90"), service_fee=Decimal("99"), total=Decimal("189")
        ),
    )
    return session


async def test_create_then_get(store):
    created = await store.create(owner_id="user-1")

    loaded = await store.get(created.session_id)

    assert loaded.status is SessionStatus.CREATED
    assert loaded.owner_id == "user-1"
    assert loaded.expires_at - loaded.created_at == timedelta(hours=24)


async def test_round_trip_preserves_every_field(store):
    session = await store.create()
    session = populated(complete_session(session_id=session.session_id, expires_at=session.expires_at))

    saved = await store.save(session)
    loaded = await store.get(session.session_id)

    assert loaded == saved
    assert loaded.shareholders[0].tax_id.get_secret_value() == "123-45-6789"
    assert loaded.payment.instrument.get_secret_value() == "4242424242424242"


async def test_sensitive_fields_are_encrypted_at_rest(store, backend):
    session = await store.create()
    await store.save(populated(complete_session(session_id=session.session_id, expires_at=session.expires_at)))

    raw = json.dumps(await backend.read(session.session_id))

    assert "123-45-6789" not in raw
    assert "4242424242424242" not in raw
    assert '"encrypted": true' in raw


async def test_updated_at_strictly_increases(store):
    session = await store.create()
    stamps = []
    for _ in range(3):
        session = await store.save(session)
        stamps.append(session.updated_at)

    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 3


async def test_unknown_session(store):
    with pytest.raises(SessionNotFoundError) as exc_info:
        await store.get("session-missing")

    assert exc_info.value.code == "SESSION_NOT_FOUND"


async def test_expired_session_is_refused(store):
    session = await store.create(ttl=timedelta(minutes=5))
    store.clock = lambda: utcnow() + timedelta(minutes=10)

    with pytest.raises(SessionExpiredError):
        await store.get(session.session_id)
    with pytest.raises(SessionExpiredError):
        await store.save(session)


async def test_plaintext_tax_id_is_rejected(store, backend):
    session = await store.create()
    await store.save(populated(complete_session(session_id=session.session_id, expires_at=session.expires_at)))

    document = await backend.read(session.session_id)
    document["shareholders"][0]["tax_id"] = "123-45-6789"
    await backend.write(session.session_id, document)

    with pytest.raises(UnencryptedRecordError) as exc_info:
        await store.get(session.session_id)
    assert exc_info.value.details["field"] == "shareholders.tax_id"


async def test_wrong_key_cannot_decrypt(settings, backend, store):
    session = await store.create()
    await store.save(populated(complete_session(session_id=session.session_id, expires_at=session.expires_at)))

    other = SessionStore(backend, settings.model_copy(update={"encryption_key": "another-key"}))
    with pytest.raises(SessionStorageError):
        await other.get(session.session_id)


async def test_restore_from_backup(store, backend):
    session = await store.create()
    session.expedite = True
    first = await store.save(session.model_copy(deep=True))
    session.expedite = False
    await store.save(session)

    backups = await store.list_backups(session.session_id)
    assert len(backups) == 2
    # the backup taken by the last save holds the expedited version
    for backup_id in backups:
        if (await backend.read_backup(backup_id))["record"]["expedite"] is True:
            break
    restored = await store.restore_from_backup(backup_id)

    assert restored == first
    assert (await store.get(session.session_id)).expedite is True


async def test_corrupted_backup_is_detected(store, backend):
    session = await store.create()
    await store.save(session)
    backup_id = (await store.list_backups(session.session_id))[0]

    document = await backend.read_backup(backup_id)
    document["record"]["status"] = "completed"
    await backend.write_backup(session.session_id, backup_id, document)

    with pytest.raises(BackupCorruptedError):
        await store.restore_from_backup(backup_id)


async def test_missing_backup(store):
    with pytest.raises(BackupNotFoundError):
        await store.restore_from_backup("session-x--20260101T000000000000-abcd1234")


async def test_backups_are_pruned(store, settings):
    session = await store.create()
    for _ in range(settings.max_backups_per_session + 3):
        session = await store.save(session)

    assert len(await store.list_backups(session.session_id)) == settings.max_backups_per_session


async def test_list_sessions_most_recent_first(store):
    first = await store.create(owner_id="user-1")
    second = await store.create(owner_id="user-2")
    third = await store.create(owner_id="user-1")
    for session in (third, first, second):
        await store.save(session)

    ordered = [s.session_id for s in await store.list_sessions()]
    assert ordered == [second.session_id, first.session_id, third.session_id]

    assert [s.session_id for s in await store.list_sessions(limit=1)] == [second.session_id]
    assert {s.session_id for s in await store.list_sessions(owner_id="user-1")} == {
        first.session_id,
        third.session_id,
    }


async def test_expired_sessions_are_listed_as_expired(store):
    session = await store.create(ttl=timedelta(minutes=1))
    store.clock = lambda: utcnow() + timedelta(minutes=5)

    expired = await store.list_sessions(status=SessionStatus.EXPIRED)

    assert [s.session_id for s in expired] == [session.session_id]
    assert await store.latest_resumable() is None


async def test_latest_resumable_skips_terminal_sessions(store):
    active = await store.create()
    done = await store.create()
    done.status = SessionStatus.COMPLETED
    await store.save(active)
    await store.save(done)

    resumable = await store.latest_resumable()

    assert resumable.session_id == active.session_id


async def test_cleanup_is_idempotent(store):
    finished = await store.create()
    finished.status = SessionStatus.ABANDONED
    await store.save(finished)
    kept = await store.create(ttl=timedelta(days=365))

    store.clock = lambda: utcnow() + timedelta(days=100)

    assert await store.cleanup_expired() == 1
    assert await store.cleanup_expired() == 0
    assert await store.list_backups(finished.session_id) == []
    assert (await store.get(kept.session_id)).session_id == kept.session_id


def test_clear_sensitive_data():
    session = populated(complete_session())

    clear_sensitive_data(session)

    assert session.shareholders[0].tax_id is None
    assert session.payment.instrument is None
    assert session.payment.transaction_id == "txn_1"


def test_session_ids_are_unique():
    ids = {generate_session_id() for _ in range(100)}

    assert len(ids) == 100
    assert all(i.startswith("session-") for i in ids)


async def test_file_backend_round_trip(settings, tmp_path):
    file_settings = settings.model_copy(update={"storage_backend": "file"})
    store = build_session_store(file_settings, backend=FileSessionBackend(tmp_path / "store"))

    session = await store.create()
    saved = await store.save(
        populated(complete_session(session_id=session.session_id, expires_at=session.expires_at))
    )

    assert session.expires_at - session.created_at == timedelta(days=settings.local_session_ttl_days)
    assert (tmp_path / "store" / f"{session.session_id}.json").exists()
    assert await store.get(session.session_id) == saved
    assert len(await store.list_backups(session.session_id)) == 1


async def test_file_backend_corrupted_document(settings, tmp_path):
    backend = FileSessionBackend(tmp_path)
    store = SessionStore(backend, settings)
    session = await store.create()
    (tmp_path / f"{session.session_id}.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(SessionStorageError) as exc_info:
        await store.get(session.session_id)
    assert exc_info.value.retryable is False


async def test_redis_backend_round_trip(settings):
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    store = SessionStore(RedisSessionBackend(client=client, prefix="test"), settings)

    session = await store.create(owner_id="user-1")
    saved = await store.save(
        populated(complete_session(session_id=session.session_id, expires_at=session.expires_at))
    )

    assert await store.get(session.session_id) == saved
    assert [s.session_id for s in await store.list_sessions()] == [session.session_id]
    assert len(await store.list_backups(session.session_id)) == 1

    assert await store.delete(session.session_id) is True
    assert await store.list_backups(session.session_id) == []
    with pytest.raises(SessionNotFoundError):
        await store.get(session.session_id)
