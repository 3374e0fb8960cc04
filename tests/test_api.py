"""
Tests for the HTTP adapter over the orchestrator.
"""

from datetime import timedelta

import httpx
import pytest

from formation_engine.core.exceptions import (
    CollaboratorTransientError,
    SessionStorageError,
    UnencryptedRecordError,
)
from formation_engine.domain.schemas import utcnow
from formation_engine.main import create_app, status_for

from .conftest import address

API = "/api/v1/formations"

OWNER = {
    "firstName": "Ada",
    "lastName": "Lovelace",
    "ownershipPercentage": 100,
    "address": address(),
    "taxId": "123-45-6789",
}


@pytest.fixture
async def client(settings, store, collaborators, events):
    app = create_app(settings, store=store, collaborators=collaborators, events=events)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://formation.test") as http:
        yield http


async def create_session(client, owner="user-1"):
    response = await client.post(API, headers={"X-Owner-Id": owner})
    assert response.status_code == 201
    return response.json()["session"]["session_id"]


async def test_health(client):
    response = await client.get("/health", headers={"X-Trace-Id": "trace-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": "1.0.0", "storage": "memory"}
    assert response.headers["X-Trace-Id"] == "trace-123"


async def test_full_formation_over_http(client):
    session_id = await create_session(client)
    base = f"{API}/{session_id}"

    response = await client.post(f"{base}/business-description", json={"description": "Bakery"})
    assert response.json()["recommended_entity_type"] == "LLC"
    await client.post(f"{base}/jurisdiction", json={"jurisdiction": "DE"})
    await client.post(f"{base}/entity-type", json={"entityType": "LLC"})
    response = await client.post(f"{base}/name", json={"baseName": "Acme Holdings"})
    assert response.json()["company_name"] == "Acme Holdings LLC"
    response = await client.post(f"{base}/name-check")
    assert response.json()["name_check"]["available"] is True
    await client.post(f"{base}/address", json={"address": address()})
    await client.post(f"{base}/registered-agent")
    response = await client.post(f"{base}/shareholders", json=OWNER)
    assert response.status_code == 201
    assert response.json()["session"]["shareholders"][0]["tax_id_last4"] == "6789"
    await client.post(f"{base}/authorized-party", json={"name": "Ada Lovelace", "title": "Member"})

    response = await client.post(f"{base}/certificate")
    assert response.status_code == 200
    certificate_id = response.json()["certificate"]["certificate_id"]
    response = await client.post(f"{base}/certificate/approve", json={"certificateId": certificate_id})
    assert response.json()["session"]["status"] == "payment_pending"

    quote = (await client.get(f"{base}/quote")).json()
    assert quote["total"] == "189"
    response = await client.post(f"{base}/payment", json={"amount": quote["total"], "instrument": "tok_visa"})
    assert response.status_code == 200

    response = await client.post(f"{base}/submit")
    body = response.json()
    assert response.status_code == 200
    assert body["session"]["status"] == "completed"
    assert body["session"]["progress"] == 100
    assert body["filing"]["filing_id"] == "filing-1"
    assert body["next_steps"]

    listed = (await client.get(API, params={"status": "completed"})).json()["sessions"]
    assert [s["session_id"] for s in listed] == [session_id]


async def test_flow_info(client):
    session_id = await create_session(client)

    response = await client.get(f"{API}/{session_id}/flow")

    assert response.json()["state"] == "created"
    assert response.json()["next_step"] == "business_described"


async def test_unknown_session_is_404(client):
    response = await client.get(f"{API}/session-missing")

    assert response.status_code == 404
    assert response.json()["error"] == "SESSION_NOT_FOUND"
    assert response.json()["suggestion"]


async def test_out_of_order_step_is_409(client):
    session_id = await create_session(client)

    response = await client.post(f"{API}/{session_id}/registered-agent")

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"


async def test_invalid_body_is_422(client):
    session_id = await create_session(client)

    response = await client.post(f"{API}/{session_id}/jurisdiction", json={"jurisdiction": "ZZ"})

    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"
    assert response.json()["field"] == "body.jurisdiction"


async def test_other_owner_is_forbidden(client):
    session_id = await create_session(client, owner="user-1")

    response = await client.get(f"{API}/{session_id}", headers={"X-Owner-Id": "user-2"})

    assert response.status_code == 403


async def test_collaborator_outage_is_503(client, services):
    session_id = await create_session(client)
    base = f"{API}/{session_id}"
    await client.post(f"{base}/business-description", json={"description": "Bakery"})
    await client.post(f"{base}/jurisdiction", json={"jurisdiction": "DE"})
    await client.post(f"{base}/entity-type", json={"entityType": "LLC"})
    await client.post(f"{base}/name", json={"baseName": "Acme Holdings"})
    services.fail_next("/check", 503, 503, 503)

    response = await client.post(f"{base}/name-check")

    assert response.status_code == 503
    assert response.json()["retryable"] is True
    assert response.json()["error"] == "API_UNAVAILABLE"


async def test_backups_and_restore(client):
    session_id = await create_session(client)
    await client.post(f"{API}/{session_id}/business-description", json={"description": "Bakery"})
    await client.post(f"{API}/{session_id}/jurisdiction", json={"jurisdiction": "DE"})

    backups = (await client.get(f"{API}/{session_id}/backups")).json()["backups"]
    assert len(backups) == 2

    restored = None
    for backup_id in backups:
        response = await client.post(f"{API}/backups/{backup_id}/restore")
        assert response.status_code == 200
        restored = response.json()["session"]
        if restored["current_step"] == "business_described":
            break

    assert restored["current_step"] == "business_described"
    current = (await client.get(f"{API}/{session_id}")).json()["session"]
    assert current["current_step"] == "business_described"


async def test_restore_rejects_other_owner(client):
    session_id = await create_session(client, owner="user-1")
    await client.post(f"{API}/{session_id}/business-description", json={"description": "Bakery"})
    backup_id = (await client.get(f"{API}/{session_id}/backups")).json()["backups"][0]

    response = await client.post(f"{API}/backups/{backup_id}/restore", headers={"X-Owner-Id": "user-2"})

    assert response.status_code == 403


async def test_abandon(client):
    session_id = await create_session(client)

    response = await client.post(f"{API}/{session_id}/abandon", json={"reason": "testing"})
    assert response.json()["session"]["status"] == "abandoned"

    response = await client.post(f"{API}/{session_id}/business-description", json={"description": "Bakery"})
    assert response.status_code == 409


def test_storage_errors_map_by_retryability():
    assert status_for(SessionStorageError("redis down")) == 503
    assert status_for(UnencryptedRecordError("plaintext tax id")) == 500
    assert status_for(CollaboratorTransientError("filing", "unavailable")) == 503


async def test_expired_session_rejected_on_read(client, store):
    """A cached session past expires_at answers 410 on every read route."""
    session_id = await create_session(client)
    assert (await client.get(f"{API}/{session_id}")).status_code == 200

    store.clock = lambda: utcnow() + timedelta(days=2)

    for path in ("", "/flow", "/quote", "/next-steps", "/backups"):
        response = await client.get(f"{API}/{session_id}{path}")
        assert response.status_code == 410, path
        assert response.json()["error"] == "SESSION_EXPIRED"


async def test_cleanup_forgets_deleted_sessions(client, store):
    session_id = await create_session(client)
    assert (await client.get(f"{API}/{session_id}")).status_code == 200
    await store.delete(session_id)

    response = await client.post(f"{API}/cleanup")

    assert response.json() == {"deleted": 0, "evicted": 1}
    assert (await client.get(f"{API}/{session_id}")).status_code == 404


async def test_create_prefers_owner_header_over_body(client):
    response = await client.post(API, json={"ownerId": "someone-else"}, headers={"X-Owner-Id": "user-1"})
    session_id = response.json()["session"]["session_id"]

    listed = (await client.get(API, headers={"X-Owner-Id": "user-1"})).json()["sessions"]

    assert [s["session_id"] for s in listed] == [session_id]
