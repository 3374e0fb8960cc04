"""
Shared fixtures: settings, stores, and fake collaborator services served
through httpx.MockTransport.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest

from formation_engine.core.config import Settings
from formation_engine.domain.schemas import (
    Address,
    AuthorizedParty,
    CompanyDetails,
    EntityType,
    FormationSession,
    FormationStep,
    Jurisdiction,
    NameCheckResult,
    RegisteredAgent,
    Shareholder,
    ShareStructure,
)
from formation_engine.infrastructure import MemorySessionBackend, build_session_store
from formation_engine.services.collaborators import build_collaborators
from formation_engine.services.orchestration import EventBus, FormationOrchestrator


def address(**overrides: Any) -> Dict[str, Any]:
    data = {
        "street1": "100 Market Street",
        "city": "Wilmington",
        "state": "DE",
        "zip_code": "19801",
    }
    data.update(overrides)
    return data


def shareholder(ownership: float = 100, **overrides: Any) -> Shareholder:
    data = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "ownership_percentage": ownership,
        "address": address(),
        "tax_id": "123-45-6789",
    }
    data.update(overrides)
    return Shareholder.model_validate(data)


def complete_session(
    entity_type: EntityType = EntityType.LLC,
    step: FormationStep = FormationStep.CREATED,
    **overrides: Any,
) -> FormationSession:
    """A session holding every piece of data the workflow collects."""
    now = datetime.now(timezone.utc)
    details = CompanyDetails(
        business_description="Bakery and coffee shop",
        jurisdiction=Jurisdiction.DE,
        entity_type=entity_type,
        base_name="Acme Holdings",
        entity_ending="LLC" if entity_type is EntityType.LLC else "Inc.",
        mailing_address=Address.model_validate(address()),
    )
    data = dict(
        session_id="session-test-1",
        current_step=step,
        company_details=details,
        registered_agent=RegisteredAgent(name="Agent Co", address=Address.model_validate(address())),
        share_structure=(
            ShareStructure(authorized_shares=1000, par_value=Decimal("0.01"))
            if entity_type.is_corporation
            else None
        ),
        shareholders=[shareholder(100)],
        authorized_party=AuthorizedParty(name="Ada Lovelace", title="Founder"),
        name_check_result=NameCheckResult(
            name=details.full_name, jurisdiction=Jurisdiction.DE, available=True
        ),
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=24),
    )
    data.update(overrides)
    return FormationSession(**data)


PARTY = {"name": "Ada Lovelace", "title": "Managing Member"}


async def fill_through_agent(orch, entity_type="LLC", jurisdiction="DE", name="Acme Holdings"):
    """Drive an orchestrator through every step up to the registered agent (or shares)."""
    await orch.describe_business("A neighborhood bakery and coffee shop")
    await orch.select_jurisdiction(jurisdiction)
    await orch.select_entity_type(entity_type)
    await orch.set_company_name(name)
    await orch.check_name()
    await orch.set_company_address(address())
    await orch.set_registered_agent()
    if EntityType(entity_type).is_corporation:
        await orch.set_share_structure()


class FakeServices:
    """
    In-process stand-ins for the name-check, document, filing and payment services.

    Filings are deduplicated by Idempotency-Key the way the real filing API does.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.taken_names = set()
        self.failures: Dict[str, List[int]] = {}
        self.filings: Dict[str, Dict[str, Any]] = {}
        self.fail_after_filing: List[int] = []
        self.reject_filing = False
        self.charge_override: Optional[str] = None
        self.certificate_ttl = timedelta(minutes=30)
        self.filing_payloads: List[Dict[str, Any]] = []

    def fail_next(self, path: str, *status_codes: int) -> None:
        self.failures.setdefault(path, []).extend(status_codes)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        queued = self.failures.get(path)
        if queued:
            return httpx.Response(queued.pop(0), json={"success": False, "message": "unavailable"})

        body = json.loads(request.content) if request.content else {}
        now = datetime.now(timezone.utc)

        if path == "/check":
            available = body["name"] not in self.taken_names
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "name": body["name"],
                    "available": available,
                    "reason": None if available else "Name is already registered",
                },
            )

        if path == "/certificates":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "certificate_id": f"cert-{len(self.requests)}",
                    "download_url": "https://docs.example.com/certificates/cert.pdf?sig=abc",
                    "storage_uri": "s3://certificates/4f2a9c",
                    "expires_at": (now + self.certificate_ttl).isoformat(),
                    "metadata": {
                        "company_name": body["company_name"],
                        "generated_at": now.isoformat(),
                        "file_size": 48213,
                        "file_hash": "sha256:4f2a9c",
                    },
                },
            )

        if path == "/documents":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "documents": [
                        {
                            "document_id": "doc-1",
                            "document_type": "certificate_of_formation",
                            "download_url": "https://docs.example.com/documents/doc-1.pdf",
                        }
                    ],
                },
            )

        if path == "/filings" and request.method == "POST":
            if self.reject_filing:
                return httpx.Response(
                    422,
                    json={
                        "success": False,
                        "error": {"code": "NAME_CONFLICT", "message": "The state rejected the filing"},
                    },
                )
            key = request.headers["Idempotency-Key"]
            self.filing_payloads.append(body)
            if key not in self.filings:
                self.filings[key] = {
                    "filing_id": f"filing-{len(self.filings) + 1}",
                    "status": "submitted",
                    "confirmation_number": f"DE-{len(self.filings) + 1:06d}",
                    "idempotency_key": key,
                }
            if self.fail_after_filing:
                return httpx.Response(self.fail_after_filing.pop(0), json={"success": False})
            return httpx.Response(200, json={"success": True, **self.filings[key]})

        if path.startswith("/filings/") and request.method == "GET":
            filing_id = path.rsplit("/", 1)[-1]
            for filing in self.filings.values():
                if filing["filing_id"] == filing_id:
                    return httpx.Response(
                        200,
                        json={"success": True, **filing, "status": "filed", "filed_at": now.isoformat()},
                    )
            return httpx.Response(404, json={"success": False, "error": {"code": "NOT_FOUND", "message": "no filing"}})

        if path == "/payments":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "transaction_id": "txn_0001",
                    "amount": self.charge_override or body["amount"],
                    "status": "completed",
                },
            )

        return httpx.Response(404, json={"success": False})


@pytest.fixture
def settings(tmp_path) -> Settings:
    zero_delay = {
        f"{service}_retry_{kind}_delay": 0.0
        for service in ("name_check", "document", "filing", "payment")
        for kind in ("base", "max")
    }
    return Settings(
        _env_file=None,
        environment="test",
        storage_backend="memory",
        storage_dir=tmp_path / "sessions",
        encryption_key="test-encryption-key",
        review_open_browser=False,
        review_port=0,
        **zero_delay,
    )


@pytest.fixture
def backend() -> MemorySessionBackend:
    return MemorySessionBackend()


@pytest.fixture
def store(settings, backend):
    return build_session_store(settings, backend=backend)


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()


@pytest.fixture
async def collaborators(settings, services):
    bundle = build_collaborators(settings, transport=httpx.MockTransport(services.handler))
    yield bundle
    await bundle.aclose()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded(events) -> List:
    received = []
    events.subscribe(received.append)
    return received


@pytest.fixture
async def orchestrator(store, collaborators, events, settings) -> FormationOrchestrator:
    return await FormationOrchestrator.start(store, collaborators, events, settings, owner_id="user-1")
