"""
Tests for the formation orchestrator: the full happy path plus the payment,
filing, naming, ownership and persistence failure paths.
"""

import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from formation_engine.core.exceptions import (
    AmountMismatchError,
    CertificateError,
    CertificateExpiredError,
    CollaboratorRejectedError,
    CollaboratorTransientError,
    InvalidStateError,
    InvalidTransitionError,
    OwnershipError,
    RequiredFieldError,
    SessionExpiredError,
    SessionStorageError,
    ValidationError,
)
from formation_engine.domain.schemas import (
    EntityType,
    FilingStatus,
    FormationStep,
    Jurisdiction,
    PaymentStatus,
    SessionStatus,
    utcnow,
)
from formation_engine.services.orchestration import EventKind, FormationOrchestrator

from .conftest import PARTY, address, complete_session, fill_through_agent, shareholder


async def reach_review(orch, **kwargs):
    await fill_through_agent(orch, **kwargs)
    await orch.add_shareholder(shareholder(100))
    await orch.set_authorized_party(PARTY)
    return await orch.generate_certificate()


async def reach_payment(orch):
    certificate = await reach_review(orch)
    await orch.approve_certificate(certificate.certificate_id)


async def test_delaware_llc_end_to_end(orchestrator, services, store, recorded):
    orch = orchestrator

    assert await orch.describe_business("A neighborhood bakery and coffee shop") is EntityType.LLC
    await orch.select_jurisdiction(Jurisdiction.DE)
    await orch.select_entity_type(EntityType.LLC)
    assert await orch.set_company_name("Acme Holdings") == "Acme Holdings LLC"
    assert (await orch.check_name()).available
    await orch.set_company_address(address(), purpose="Operate a bakery")
    agent = await orch.set_registered_agent()
    assert agent.is_default
    await orch.add_shareholder(shareholder(100))
    await orch.set_authorized_party(PARTY)

    certificate = await orch.generate_certificate()
    assert orch.session.status is SessionStatus.REVIEW
    await orch.approve_certificate(certificate.certificate_id)
    assert orch.session.status is SessionStatus.PAYMENT_PENDING

    quote = orch.quote()
    assert quote.total == Decimal("189")
    payment = await orch.process_payment(quote.total, instrument="tok_visa")
    assert payment.transaction_id == "txn_0001"
    assert orch.session.status is SessionStatus.PAYMENT_COMPLETE

    result = await orch.submit_formation()

    session = orch.session
    assert result.status is FilingStatus.SUBMITTED
    assert session.current_step is FormationStep.COMPLETED
    assert session.status is SessionStatus.COMPLETED
    assert orch.progress() == 100
    assert session.certificate_data.approved_at is not None
    assert session.shareholders[0].tax_id is None
    assert session.payment.instrument is None
    assert services.filing_payloads[0]["shareholders"][0]["tax_id"] == "123-45-6789"
    assert services.filing_payloads[0]["entity_type"] == "LLC"
    assert "share_structure" not in services.filing_payloads[0]

    stored = await store.get(orch.session_id)
    assert stored.status is SessionStatus.COMPLETED
    assert stored.shareholders[0].tax_id is None

    step_events = [e.data["current_step"] for e in recorded if e.kind is EventKind.STEP_CHANGED]
    assert len(step_events) == 12
    assert step_events[-1] == "completed"
    kinds = {e.kind for e in recorded}
    assert {
        EventKind.NAME_CHECK_COMPLETE,
        EventKind.DOCUMENTS_GENERATED,
        EventKind.PAYMENT_COMPLETE,
        EventKind.FILING_COMPLETE,
        EventKind.PROGRESS_UPDATE,
    } <= kinds
    assert EventKind.ERROR not in kinds


async def test_recommends_corporation_for_venture_backed_business(orchestrator):
    recommended = await orchestrator.describe_business("A startup planning a seed round with investors")

    assert recommended is EntityType.C_CORP
    assert orchestrator.session.company_details.recommended_entity_type is EntityType.C_CORP


async def test_corporation_passes_through_share_structure(orchestrator):
    await fill_through_agent(orchestrator, entity_type="C-Corp")

    session = orchestrator.session
    assert session.current_step is FormationStep.SHARES_SET
    assert session.share_structure.is_default
    assert session.incorporator is not None
    assert session.company_details.full_name == "Acme Holdings Inc."


async def test_share_structure_rejected_for_llc(orchestrator):
    await fill_through_agent(orchestrator)

    with pytest.raises(ValidationError):
        await orchestrator.set_share_structure()
    assert orchestrator.session.current_step is FormationStep.AGENT_SET


async def test_wyoming_offers_only_llc(orchestrator):
    await orchestrator.describe_business("Consulting")
    await orchestrator.select_jurisdiction("WY")

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.select_entity_type("C-Corp")
    assert exc_info.value.field == "company_details.entity_type"


async def test_unsupported_jurisdiction(orchestrator):
    await orchestrator.describe_business("Consulting")

    with pytest.raises(ValidationError):
        await orchestrator.select_jurisdiction("ZZ")


async def test_steps_cannot_be_skipped(orchestrator):
    await orchestrator.describe_business("Consulting")

    with pytest.raises(InvalidTransitionError):
        await orchestrator.set_registered_agent()
    assert orchestrator.session.current_step is FormationStep.BUSINESS_DESCRIBED


async def test_invalid_name_format(orchestrator):
    await orchestrator.describe_business("Consulting")
    await orchestrator.select_jurisdiction("DE")
    await orchestrator.select_entity_type("LLC")

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.set_company_name("Acme LLC")
    assert exc_info.value.field == "company_details.name"


async def test_unavailable_name_offers_suggestions(orchestrator, services, recorded):
    services.taken_names.add("Acme Holdings LLC")
    await orchestrator.describe_business("Consulting")
    await orchestrator.select_jurisdiction("DE")
    await orchestrator.select_entity_type("LLC")
    await orchestrator.set_company_name("Acme Holdings")

    result = await orchestrator.check_name()

    assert result.available is False
    assert 0 < len(result.suggestions) <= 5
    assert "Acme Holdings LLC" not in result.suggestions
    assert orchestrator.session.current_step is FormationStep.NAME_SET
    assert orchestrator.session.name_check_result.available is False

    await orchestrator.set_company_name("Acme Holdings Group")
    assert (await orchestrator.check_name()).available
    assert orchestrator.session.current_step is FormationStep.NAME_CHECKED
    notices = [e for e in recorded if e.kind is EventKind.NAME_CHECK_COMPLETE]
    assert [n.data["available"] for n in notices] == [False, True]


async def test_name_check_outage_is_retryable(orchestrator, services, recorded):
    await orchestrator.describe_business("Consulting")
    await orchestrator.select_jurisdiction("DE")
    await orchestrator.select_entity_type("LLC")
    await orchestrator.set_company_name("Acme Holdings")
    services.fail_next("/check", 503, 503, 503)

    with pytest.raises(CollaboratorTransientError) as exc_info:
        await orchestrator.check_name()

    assert exc_info.value.retryable
    assert orchestrator.session.current_step is FormationStep.NAME_SET
    errors = [e for e in recorded if e.kind is EventKind.ERROR]
    assert errors[-1].data["retryable"] is True
    assert errors[-1].data["operation"] == "check_name"

    await orchestrator.check_name()
    assert orchestrator.session.current_step is FormationStep.NAME_CHECKED


async def test_ownership_must_total_100_before_moving_on(orchestrator):
    await fill_through_agent(orchestrator)
    await orchestrator.add_shareholder(shareholder(60))
    second = await orchestrator.add_shareholder(shareholder(60, first_name="Grace"))

    with pytest.raises(OwnershipError) as exc_info:
        await orchestrator.set_authorized_party(PARTY)

    assert exc_info.value.total == 120
    assert orchestrator.session.current_step is FormationStep.SHAREHOLDERS_ADDED
    assert orchestrator.session.authorized_party is None

    updated = await orchestrator.update_shareholder(second.id, ownership_percentage=40)
    assert updated.tax_id.get_secret_value() == "123-45-6789"
    await orchestrator.set_authorized_party(PARTY)
    assert orchestrator.session.current_step is FormationStep.AUTHORIZED_PARTY_SET


async def test_remove_shareholder(orchestrator):
    await fill_through_agent(orchestrator)
    first = await orchestrator.add_shareholder(shareholder(100))
    extra = await orchestrator.add_shareholder(shareholder(50, first_name="Grace"))

    await orchestrator.remove_shareholder(extra.id)

    assert [s.id for s in orchestrator.session.shareholders] == [first.id]
    with pytest.raises(ValidationError):
        await orchestrator.remove_shareholder("no-such-id")


async def test_duplicate_shareholder_rejected(orchestrator):
    await fill_through_agent(orchestrator)
    owner = await orchestrator.add_shareholder(shareholder(100))

    with pytest.raises(ValidationError):
        await orchestrator.add_shareholder(owner)


async def test_concurrent_calls_are_serialized(orchestrator):
    await fill_through_agent(orchestrator)

    await asyncio.gather(
        orchestrator.add_shareholder(shareholder(50)),
        orchestrator.add_shareholder(shareholder(50, first_name="Grace")),
    )

    assert len(orchestrator.session.shareholders) == 2
    assert orchestrator.session.total_ownership() == 100


async def test_invalid_shareholder_input(orchestrator):
    await fill_through_agent(orchestrator)

    with pytest.raises(ValidationError) as exc_info:
        await orchestrator.add_shareholder({"first_name": "Ada", "last_name": "Lovelace"})
    assert exc_info.value.field.startswith("shareholders.")


async def test_certificate_never_outlives_session(orchestrator, services):
    services.certificate_ttl = timedelta(days=3)

    certificate = await reach_review(orchestrator)

    assert certificate.expires_at == orchestrator.session.expires_at


async def test_approve_rejects_other_certificate(orchestrator):
    await reach_review(orchestrator)

    with pytest.raises(CertificateError):
        await orchestrator.approve_certificate("cert-unknown")
    assert orchestrator.session.current_step is FormationStep.CERTIFICATE_GENERATED


async def test_approve_expired_certificate(orchestrator):
    await reach_review(orchestrator)
    orchestrator.clock = lambda: utcnow() + timedelta(minutes=31)

    with pytest.raises(CertificateExpiredError):
        await orchestrator.approve_certificate()
    assert orchestrator.session.certificate_data.approved_at is None


async def test_edit_from_review_discards_certificate(orchestrator):
    await reach_review(orchestrator)
    assert FormationStep.COMPANY_ADDRESS_SET.value in orchestrator.summary()["edit_targets"]

    await orchestrator.edit_step(FormationStep.COMPANY_ADDRESS_SET)

    session = orchestrator.session
    assert session.current_step is FormationStep.COMPANY_ADDRESS_SET
    assert session.status is SessionStatus.IN_PROGRESS
    assert session.certificate_data is None

    await orchestrator.set_company_address(address(street1="200 Main Street"))
    for _ in range(3):
        await orchestrator.advance()
    assert orchestrator.session.current_step is FormationStep.AUTHORIZED_PARTY_SET
    await orchestrator.generate_certificate()
    assert orchestrator.session.company_details.mailing_address.street1 == "200 Main Street"


async def test_data_change_during_review_moves_back(orchestrator):
    await reach_review(orchestrator)

    await orchestrator.set_registered_agent({"name": "Own Agent", "address": address()})

    assert orchestrator.session.current_step is FormationStep.AGENT_SET
    assert orchestrator.session.certificate_data is None


async def test_edit_outside_review_rejected(orchestrator):
    await fill_through_agent(orchestrator)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.edit_step(FormationStep.NAME_SET)


async def test_payment_requires_exact_amount(orchestrator, services):
    await reach_payment(orchestrator)

    with pytest.raises(AmountMismatchError) as exc_info:
        await orchestrator.process_payment(Decimal("100"))

    assert exc_info.value.expected == Decimal("189")
    assert "/payments" not in services.paths()
    assert orchestrator.session.payment_status is None


async def test_charged_amount_must_match_quote(orchestrator, services):
    await reach_payment(orchestrator)
    services.charge_override = "150.00"

    with pytest.raises(AmountMismatchError):
        await orchestrator.process_payment(Decimal("189"))
    assert orchestrator.session.status is SessionStatus.PAYMENT_PENDING


async def test_expedited_payment(orchestrator):
    await reach_payment(orchestrator)

    assert orchestrator.quote(expedite=True).total == Decimal("239")
    await orchestrator.process_payment(Decimal("239"), expedite=True)

    assert orchestrator.session.expedite is True
    assert orchestrator.session.payment.breakdown.expedite_fee == Decimal("50")


async def test_declined_payment_is_recorded(orchestrator, services):
    await reach_payment(orchestrator)
    services.fail_next("/payments", 402)

    with pytest.raises(CollaboratorRejectedError):
        await orchestrator.process_payment(Decimal("189"))

    assert orchestrator.session.payment_status is PaymentStatus.FAILED
    await orchestrator.process_payment(Decimal("189"))
    assert orchestrator.session.payment_status is PaymentStatus.COMPLETED


async def test_payment_before_approval_rejected(orchestrator):
    await reach_review(orchestrator)

    with pytest.raises(InvalidStateError):
        await orchestrator.process_payment(Decimal("189"))


async def test_submit_requires_payment(orchestrator, services):
    await reach_payment(orchestrator)

    with pytest.raises(InvalidStateError) as exc_info:
        await orchestrator.submit_formation()

    assert exc_info.value.code == "PAYMENT_REQUIRED"
    assert "/documents" not in services.paths()
    assert "/filings" not in services.paths()


async def test_submit_fails_fast_on_missing_data(store, collaborators, services, settings):
    session = complete_session(
        step=FormationStep.CERTIFICATE_APPROVED,
        status=SessionStatus.PAYMENT_COMPLETE,
        payment_status=PaymentStatus.COMPLETED,
        registered_agent=None,
    )
    orch = FormationOrchestrator(session, store, collaborators, settings=settings)

    with pytest.raises(RequiredFieldError) as exc_info:
        await orch.submit_formation()

    assert exc_info.value.field == "registered_agent"
    assert services.requests == []


async def test_transient_filing_failure_keeps_idempotency_key(orchestrator, services):
    await reach_payment(orchestrator)
    await orchestrator.process_payment(Decimal("189"))
    # the filing is recorded but every response is lost
    services.fail_after_filing.extend([503, 503, 503])

    with pytest.raises(CollaboratorTransientError):
        await orchestrator.submit_formation()

    session = orchestrator.session
    assert session.status is SessionStatus.PAYMENT_COMPLETE
    assert session.last_error["error"] == "API_UNAVAILABLE"
    assert session.last_error["retryable"] is True
    key = session.filing_idempotency_key
    assert key.startswith(f"filing-{orchestrator.session_id}-")

    result = await orchestrator.submit_formation()

    assert result.idempotency_key == key
    assert len(services.filings) == 1
    keys = {r.headers["Idempotency-Key"] for r in services.requests if r.url.path == "/filings"}
    assert keys == {key}
    assert orchestrator.session.status is SessionStatus.COMPLETED
    assert orchestrator.session.last_error is None


async def test_filing_rejection_fails_session(orchestrator, services):
    await reach_payment(orchestrator)
    await orchestrator.process_payment(Decimal("189"))
    services.reject_filing = True

    with pytest.raises(CollaboratorRejectedError):
        await orchestrator.submit_formation()

    session = orchestrator.session
    assert session.status is SessionStatus.FAILED
    assert session.last_error["details"]["error_code"] == "NAME_CONFLICT"
    assert session.shareholders[0].tax_id is None
    with pytest.raises(InvalidStateError):
        await orchestrator.submit_formation()


async def test_refresh_filing_status_after_completion(orchestrator):
    await reach_payment(orchestrator)
    await orchestrator.process_payment(Decimal("189"))
    submitted = await orchestrator.submit_formation()

    refreshed = await orchestrator.refresh_filing_status()

    assert refreshed.status is FilingStatus.FILED
    assert refreshed.filing_id == submitted.filing_id
    assert orchestrator.session.submission_result.filed_at is not None


async def test_abandon_clears_sensitive_data(orchestrator, store):
    await fill_through_agent(orchestrator)
    await orchestrator.add_shareholder(shareholder(100))

    await orchestrator.abandon("Changed plans")

    stored = await store.get(orchestrator.session_id)
    assert stored.status is SessionStatus.ABANDONED
    assert stored.shareholders[0].tax_id is None
    with pytest.raises(InvalidStateError):
        await orchestrator.set_authorized_party(PARTY)


async def test_expired_session_refuses_operations(store, collaborators, events, settings):
    orch = await FormationOrchestrator.start(store, collaborators, events, settings, ttl=timedelta(minutes=1))
    orch.clock = lambda: utcnow() + timedelta(minutes=2)

    with pytest.raises(SessionExpiredError):
        await orch.describe_business("Consulting")


async def test_failed_save_leaves_session_untouched(orchestrator, store, monkeypatch):
    async def broken_save(session):
        raise SessionStorageError("disk full")

    monkeypatch.setattr(store, "save", broken_save)

    with pytest.raises(SessionStorageError):
        await orchestrator.describe_business("Consulting")

    assert orchestrator.session.current_step is FormationStep.CREATED
    assert orchestrator.session.company_details is None


async def test_resume_restores_progress(orchestrator, store, collaborators, events, settings):
    await fill_through_agent(orchestrator)

    resumed = await FormationOrchestrator.resume(orchestrator.session_id, store, collaborators, events, settings)

    assert resumed.session == orchestrator.session
    await resumed.add_shareholder(shareholder(100))
    assert resumed.session.current_step is FormationStep.SHAREHOLDERS_ADDED


async def test_summary_masks_tax_ids(orchestrator):
    await fill_through_agent(orchestrator)
    await orchestrator.add_shareholder(shareholder(100))

    summary = orchestrator.summary()

    assert summary["shareholders"][0]["tax_id_last4"] == "6789"
    assert "123-45-6789" not in json.dumps(summary)
    assert summary["company"]["name"] == "Acme Holdings LLC"
    assert summary["costs"]["total"] == "189"
    assert summary["missing_fields"] == []


async def test_next_steps_depend_on_state_and_type(store, collaborators, settings):
    session = complete_session(EntityType.S_CORP)
    session.company_details.jurisdiction = Jurisdiction.NY
    orch = FormationOrchestrator(session, store, collaborators, settings=settings)

    steps = orch.next_steps()

    assert steps[0].startswith("Apply for an EIN")
    assert any("publication" in step for step in steps)
    assert any("Form 2553" in step for step in steps)
