"""
Formation Orchestrator - drives one formation session from creation to filing.

Every mutating operation follows the same shape: validate locally, call the
collaborator the step needs, update a draft copy of the session, ask the step
graph to transition, persist through the session store and only then swap the
draft in and publish notifications. A failure at any point leaves the
committed session untouched.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from formation_engine.core.config import Settings
from formation_engine.core.exceptions import (
    AmountMismatchError,
    CertificateError,
    CertificateExpiredError,
    CollaboratorRejectedError,
    DomainException,
    InvalidStateError,
    InvalidTransitionError,
    RequiredFieldError,
    SessionExpiredError,
    ValidationError,
)
from formation_engine.domain.jurisdictions import (
    DEFAULT_INCORPORATOR,
    DEFAULT_REGISTERED_AGENT,
    DEFAULT_SHARE_STRUCTURE,
    compute_costs,
    entity_endings,
    entity_types_for,
    recommend_entity_type,
)
from formation_engine.domain.payloads import build_formation_payload, missing_required_fields
from formation_engine.domain.schemas import (
    Address,
    AuthorizedParty,
    CertificateSessionData,
    CompanyDetails,
    CostBreakdown,
    EntityType,
    FormationSession,
    FormationStep,
    Jurisdiction,
    NameCheckResult,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    RegisteredAgent,
    SessionStatus,
    Shareholder,
    ShareStructure,
    SubmissionResult,
)
from formation_engine.infrastructure.session_store import SessionStore, clear_sensitive_data
from formation_engine.services.certificate.review import CertificateReviewResult, review_certificate
from formation_engine.services.collaborators import Collaborators, make_idempotency_key
from formation_engine.state_machines.formation_flow import (
    TransitionResult,
    edit_targets,
    next_step,
    progress,
    transition,
)
from formation_engine.utils.encryption import mask_tail

from .events import EventBus, EventKind, FormationEvent

logger = structlog.get_logger(__name__)

POST_FORMATION_STEPS = [
    "Apply for an EIN (Employer Identification Number) from the IRS",
    "Set up registered agent service if not already done",
    "Open a business bank account",
    "File for necessary business licenses and permits",
    "Set up accounting and bookkeeping systems",
]

MAX_DESCRIPTION_LENGTH = 2000


class _Operation:
    """Working state of one orchestrator call."""

    def __init__(self, name: str, draft: FormationSession):
        self.name = name
        self.draft = draft
        self.events: List[FormationEvent] = []

    def emit(self, kind: EventKind, **data: Any) -> None:
        self.events.append(FormationEvent(kind=kind, session_id=self.draft.session_id, data=data))


class FormationOrchestrator:
    """
    Owns exactly one FormationSession.

    Calls on one orchestrator are serialized; different orchestrators (and so
    different sessions) run concurrently.
    """

    def __init__(
        self,
        session: FormationSession,
        store: SessionStore,
        collaborators: Collaborators,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session = session
        self.store = store
        self.collaborators = collaborators
        self.events = events or EventBus()
        self.settings = settings or store.settings
        self.clock = clock or (lambda: store.clock())
        self._lock = asyncio.Lock()
        self.logger = logger.bind(session_id=session.session_id)

    @classmethod
    async def start(
        cls,
        store: SessionStore,
        collaborators: Collaborators,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        owner_id: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> "FormationOrchestrator":
        session = await store.create(owner_id=owner_id, ttl=ttl)
        orchestrator = cls(session, store, collaborators, events, settings)
        orchestrator.logger.info("formation_started", owner_id=owner_id)
        return orchestrator

    @classmethod
    async def resume(
        cls,
        session_id: str,
        store: SessionStore,
        collaborators: Collaborators,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
    ) -> "FormationOrchestrator":
        """
        Raises:
            SessionNotFoundError: unknown session id
            SessionExpiredError: the session is past expires_at
        """
        session = await store.get(session_id)
        orchestrator = cls(session, store, collaborators, events, settings)
        orchestrator.logger.info(
            "formation_resumed",
            current_step=session.current_step.value,
            status=session.status.value,
        )
        return orchestrator

    # ------------------------------------------------------------------ state

    @property
    def session(self) -> FormationSession:
        """Snapshot of the committed session."""
        return self._session.model_copy(deep=True)

    @property
    def session_id(self) -> str:
        return self._session.session_id

    def is_expired(self) -> bool:
        return self._session.is_expired(self.clock())

    def _ensure_usable(self, allow_terminal: bool = False) -> None:
        session = self._session
        if session.is_expired(self.clock()):
            raise SessionExpiredError(session.session_id, session.expires_at)
        if session.is_terminal and not allow_terminal:
            raise InvalidStateError(
                f"Session is {session.status.value} and can no longer be changed",
                details={"status": session.status.value},
                suggestion="Start a new formation session.",
            )

    async def _commit(self, op: _Operation) -> FormationSession:
        """Persist the draft, make it the committed session and queue change events."""
        previous = self._session
        saved = await self.store.save(op.draft)
        self._session = saved
        op.draft = saved.model_copy(deep=True)

        if previous.current_step is not saved.current_step:
            op.emit(
                EventKind.STEP_CHANGED,
                previous_step=previous.current_step.value,
                current_step=saved.current_step.value,
            )
            op.emit(EventKind.PROGRESS_UPDATE, progress=progress(saved), message=None)
        if previous.status is not saved.status:
            op.emit(
                EventKind.STATUS_CHANGED,
                previous_status=previous.status.value,
                status=saved.status.value,
            )
        return saved

    @asynccontextmanager
    async def _operation(self, name: str, allow_terminal: bool = False):
        """
        Serialize the call, hand out a draft copy and commit it on success.

        Queued events are published after the lock is released, so listeners
        may call back into the orchestrator.
        """
        op: Optional[_Operation] = None
        try:
            async with self._lock:
                self._ensure_usable(allow_terminal)
                op = _Operation(name, self._session.model_copy(deep=True))
                try:
                    yield op
                    await self._commit(op)
                except DomainException as e:
                    self.logger.warning(
                        "formation_operation_failed",
                        operation=name,
                        error_code=e.code,
                        retryable=e.retryable,
                        error=e.message,
                    )
                    op.emit(
                        EventKind.ERROR,
                        operation=name,
                        step=self._session.current_step.value,
                        **e.to_dict(),
                    )
                    raise
        finally:
            if op is not None:
                for event in op.events:
                    await self.events.publish(event)

    def _move_to(self, op: _Operation, target: FormationStep) -> Optional[TransitionResult]:
        """
        Transition the draft to ``target``; re-submitting the current step is a no-op.

        Moving backward out of review discards the generated certificate.
        """
        draft = op.draft
        if draft.current_step is target:
            return None
        result = transition(draft, target)
        if result.backward:
            draft.certificate_data = None
        return result

    @staticmethod
    def _details(draft: FormationSession) -> CompanyDetails:
        if draft.company_details is None:
            draft.company_details = CompanyDetails()
        return draft.company_details

    # ------------------------------------------------------------ data steps

    async def describe_business(self, description: str) -> EntityType:
        """
        Record what the business does and return the recommended entity type.
        """
        text = (description or "").strip()
        if not text:
            raise RequiredFieldError("company_details.business_description")
        if len(text) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                "company_details.business_description",
                f"Business description must be at most {MAX_DESCRIPTION_LENGTH} characters",
            )

        async with self._operation("describe_business") as op:
            details = self._details(op.draft)
            details.business_description = text
            details.recommended_entity_type = recommend_entity_type(text)
            self._move_to(op, FormationStep.BUSINESS_DESCRIBED)
        return details.recommended_entity_type

    async def select_jurisdiction(self, jurisdiction: Jurisdiction) -> None:
        try:
            jurisdiction = Jurisdiction(jurisdiction)
        except ValueError as e:
            raise ValidationError(
                "company_details.jurisdiction",
                f"Unsupported jurisdiction: {jurisdiction}",
                suggestion=f"Choose one of: {', '.join(j.value for j in Jurisdiction)}.",
            ) from e

        async with self._operation("select_jurisdiction") as op:
            details = self._details(op.draft)
            details.jurisdiction = jurisdiction
            self._move_to(op, FormationStep.STATE_SELECTED)

    async def select_entity_type(self, entity_type: EntityType) -> None:
        try:
            entity_type = EntityType(entity_type)
        except ValueError as e:
            raise ValidationError(
                "company_details.entity_type",
                f"Unsupported entity type: {entity_type}",
                suggestion=f"Choose one of: {', '.join(t.value for t in EntityType)}.",
            ) from e

        async with self._operation("select_entity_type") as op:
            details = self._details(op.draft)
            if details.jurisdiction is None:
                raise RequiredFieldError("company_details.jurisdiction")
            offered = entity_types_for(details.jurisdiction)
            if entity_type not in offered:
                raise ValidationError(
                    "company_details.entity_type",
                    f"{details.jurisdiction.value} does not offer {entity_type.value} formation",
                    suggestion=f"Choose one of: {', '.join(t.value for t in offered)}.",
                )

            details.entity_type = entity_type
            if details.entity_ending and details.entity_ending not in entity_endings(entity_type):
                details.entity_ending = None
            if entity_type.is_corporation:
                op.draft.incorporator = op.draft.incorporator or DEFAULT_INCORPORATOR
            else:
                op.draft.share_structure = None
                op.draft.incorporator = None
            self._move_to(op, FormationStep.TYPE_SELECTED)

    async def set_company_name(self, base_name: str, entity_ending: Optional[str] = None) -> str:
        """
        Set the company name; the ending defaults to the first one allowed for the entity type.

        Returns:
            Full legal name
        """
        async with self._operation("set_company_name") as op:
            details = self._details(op.draft)
            if details.jurisdiction is None:
                raise RequiredFieldError("company_details.jurisdiction")
            if details.entity_type is None:
                raise RequiredFieldError("company_details.entity_type")

            base_name = (base_name or "").strip()
            ending = entity_ending or entity_endings(details.entity_type)[0]
            problems = self.collaborators.name_check.validate_format(
                base_name, ending, details.entity_type, details.jurisdiction
            )
            if problems:
                raise ValidationError(
                    "company_details.name",
                    "; ".join(problems),
                    suggestion="Choose a different company name.",
                    details={"problems": problems},
                )

            previous_name = details.full_name
            details.base_name = base_name
            details.entity_ending = ending
            if details.full_name != previous_name:
                op.draft.name_check_result = None
            self._move_to(op, FormationStep.NAME_SET)
        return details.full_name

    async def check_name(self) -> NameCheckResult:
        """
        Check availability of the current name.

        An available name advances to name_checked. An unavailable name keeps the
        session at name_set and the result carries alternative suggestions.
        A collaborator failure surfaces as its own (retryable) error with the
        step unchanged.
        """
        async with self._operation("check_name") as op:
            draft = op.draft
            if draft.current_step not in (FormationStep.NAME_SET, FormationStep.NAME_CHECKED):
                raise InvalidTransitionError(
                    draft.current_step.value,
                    FormationStep.NAME_CHECKED.value,
                    reason="Set the company name before checking availability",
                )
            details = self._details(draft)
            client = self.collaborators.name_check
            result = await client.check_availability(
                details.base_name, details.entity_ending, details.entity_type, details.jurisdiction
            )
            if not result.available:
                result.suggestions = await client.suggest_alternatives(
                    details.base_name, details.entity_ending, details.entity_type, details.jurisdiction
                )

            draft.name_check_result = result
            op.emit(
                EventKind.NAME_CHECK_COMPLETE,
                name=result.name,
                available=result.available,
                suggestions=result.suggestions,
            )
            if result.available:
                self._move_to(op, FormationStep.NAME_CHECKED)
        return result

    async def set_company_address(
        self,
        address: Address,
        purpose: Optional[str] = None,
        effective_date: Optional[date] = None,
    ) -> None:
        address = _coerce(Address, address, "company_details.mailing_address")
        async with self._operation("set_company_address") as op:
            details = self._details(op.draft)
            details.mailing_address = address
            if purpose:
                details.purpose = purpose.strip()
            if effective_date is not None:
                details.effective_date = effective_date
            self._move_to(op, FormationStep.COMPANY_ADDRESS_SET)

    async def set_registered_agent(self, agent: Optional[RegisteredAgent] = None) -> RegisteredAgent:
        """Use the given agent, or the default registered agent service when None."""
        agent = (
            _coerce(RegisteredAgent, agent, "registered_agent")
            if agent is not None
            else DEFAULT_REGISTERED_AGENT.model_copy(deep=True)
        )
        async with self._operation("set_registered_agent") as op:
            op.draft.registered_agent = agent
            self._move_to(op, FormationStep.AGENT_SET)
        return agent

    async def set_share_structure(self, structure: Optional[ShareStructure] = None) -> ShareStructure:
        structure = (
            _coerce(ShareStructure, structure, "share_structure")
            if structure is not None
            else DEFAULT_SHARE_STRUCTURE.model_copy(deep=True)
        )
        async with self._operation("set_share_structure") as op:
            if not op.draft.is_corporation:
                raise ValidationError(
                    "share_structure",
                    "Share structure applies to corporations only",
                    suggestion="LLCs go straight to adding members.",
                )
            op.draft.share_structure = structure
            self._move_to(op, FormationStep.SHARES_SET)
        return structure

    async def add_shareholder(self, shareholder: Shareholder) -> Shareholder:
        """
        Append a shareholder.

        The 100% ownership total is enforced when leaving the owners step, so
        owners can be added one at a time.
        """
        shareholder = _coerce(Shareholder, shareholder, "shareholders")
        async with self._operation("add_shareholder") as op:
            draft = op.draft
            if any(s.id == shareholder.id for s in draft.shareholders):
                raise ValidationError("shareholders", f"Shareholder {shareholder.id} already exists")
            draft.shareholders.append(shareholder)
            self._move_to(op, FormationStep.SHAREHOLDERS_ADDED)
        self.logger.info(
            "shareholder_added",
            shareholder_id=shareholder.id,
            total_ownership=self._session.total_ownership(),
        )
        return shareholder

    def _shareholder_index(self, draft: FormationSession, shareholder_id: str) -> int:
        if draft.current_step is not FormationStep.SHAREHOLDERS_ADDED:
            raise InvalidStateError(
                "Shareholders can only be changed at the owners step",
                details={"current_step": draft.current_step.value},
                suggestion="Go back to the owners step to edit shareholders.",
            )
        for index, shareholder in enumerate(draft.shareholders):
            if shareholder.id == shareholder_id:
                return index
        raise ValidationError(
            "shareholders",
            f"Shareholder {shareholder_id} not found",
            details={"shareholder_id": shareholder_id},
        )

    async def update_shareholder(self, shareholder_id: str, **changes: Any) -> Shareholder:
        changes.pop("id", None)
        async with self._operation("update_shareholder") as op:
            index = self._shareholder_index(op.draft, shareholder_id)
            current = op.draft.shareholders[index]
            merged = current.model_dump()
            merged.update(changes)
            if "tax_id" not in changes and current.tax_id is not None:
                merged["tax_id"] = current.tax_id.get_secret_value()
            updated = _coerce(Shareholder, merged, "shareholders")
            op.draft.shareholders[index] = updated
        return updated

    async def remove_shareholder(self, shareholder_id: str) -> None:
        async with self._operation("remove_shareholder") as op:
            index = self._shareholder_index(op.draft, shareholder_id)
            del op.draft.shareholders[index]

    async def set_authorized_party(self, party: AuthorizedParty) -> None:
        """
        Raises:
            OwnershipError: when leaving the owners step with ownership not totalling 100%
        """
        party = _coerce(AuthorizedParty, party, "authorized_party")
        async with self._operation("set_authorized_party") as op:
            op.draft.authorized_party = party
            self._move_to(op, FormationStep.AUTHORIZED_PARTY_SET)

    # ----------------------------------------------------------- navigation

    async def advance(self) -> FormationStep:
        """Move to the single forward successor of the current step."""
        async with self._operation("advance") as op:
            target = next_step(op.draft)
            if target is None:
                raise InvalidTransitionError(
                    op.draft.current_step.value,
                    "none",
                    reason="There is no step after the current one",
                )
            transition(op.draft, target)
        return self._session.current_step

    async def edit_step(self, step: FormationStep) -> FormationStep:
        """Go back from review to an earlier data step; the certificate is discarded."""
        target = FormationStep(step)
        async with self._operation("edit_step") as op:
            if target not in edit_targets(op.draft):
                raise InvalidTransitionError(
                    op.draft.current_step.value,
                    target.value,
                    reason=f"Cannot go back to {target.value} from {op.draft.current_step.value}",
                )
            self._move_to(op, target)
        return self._session.current_step

    # ---------------------------------------------------------- certificate

    async def generate_certificate(self) -> CertificateSessionData:
        """
        Produce a reviewable certificate and move to review.

        The certificate link never outlives the session.
        """
        async with self._operation("generate_certificate") as op:
            draft = op.draft
            if draft.current_step not in (
                FormationStep.AUTHORIZED_PARTY_SET,
                FormationStep.CERTIFICATE_GENERATED,
            ):
                raise InvalidTransitionError(
                    draft.current_step.value,
                    FormationStep.CERTIFICATE_GENERATED.value,
                    reason="All company information must be collected before generating the certificate",
                )
            payload = build_formation_payload(draft)
            op.emit(EventKind.PROGRESS_UPDATE, progress=progress(draft), message="Generating certificate...")

            certificate = await self.collaborators.documents.generate_certificate(payload)
            if certificate.expires_at > draft.expires_at:
                certificate.expires_at = draft.expires_at
            draft.certificate_data = certificate
            op.emit(
                EventKind.DOCUMENTS_GENERATED,
                certificate_id=certificate.certificate_id,
                expires_at=certificate.expires_at.isoformat(),
            )
            self._move_to(op, FormationStep.CERTIFICATE_GENERATED)
        return certificate

    async def approve_certificate(self, certificate_id: Optional[str] = None) -> CertificateSessionData:
        """
        Raises:
            CertificateExpiredError: the certificate link has expired
            CertificateError: certificate_id does not match the one under review
        """
        async with self._operation("approve_certificate") as op:
            draft = op.draft
            certificate = draft.certificate_data
            if draft.current_step is not FormationStep.CERTIFICATE_GENERATED or certificate is None:
                raise InvalidTransitionError(
                    draft.current_step.value,
                    FormationStep.CERTIFICATE_APPROVED.value,
                    reason="There is no certificate awaiting approval",
                )
            if certificate_id is not None and certificate_id != certificate.certificate_id:
                raise CertificateError(
                    f"Certificate {certificate_id} is not the one under review",
                    details={"certificate_id": certificate_id},
                    suggestion="Approve the most recently generated certificate.",
                )
            now = self.clock()
            if certificate.is_expired(now):
                raise CertificateExpiredError(certificate.certificate_id)

            certificate.approved_at = now
            self._move_to(op, FormationStep.CERTIFICATE_APPROVED)
        return certificate

    async def review_certificate(self, **kwargs: Any) -> CertificateReviewResult:
        """
        Run the interactive certificate review gate.

        Keyword arguments are passed through to
        formation_engine.services.certificate.review.review_certificate.
        """
        self._ensure_usable()
        try:
            return await review_certificate(self, settings=self.settings, **kwargs)
        except CertificateError as e:
            await self.events.emit(
                EventKind.ERROR,
                self.session_id,
                operation="review_certificate",
                step=self._session.current_step.value,
                **e.to_dict(),
            )
            raise

    # -------------------------------------------------------------- payment

    def quote(self, expedite: Optional[bool] = None) -> CostBreakdown:
        """State filing fee + service fee, plus the expedite fee when requested."""
        details = self._session.company_details
        if details is None or details.jurisdiction is None:
            raise RequiredFieldError("company_details.jurisdiction")
        return compute_costs(
            details.jurisdiction,
            self.settings.service_fee,
            self.settings.expedite_fee,
            expedite=self._session.expedite if expedite is None else expedite,
        )

    async def process_payment(
        self,
        amount: Decimal,
        method: PaymentMethod = PaymentMethod.CARD,
        instrument: Optional[str] = None,
        expedite: bool = False,
    ) -> PaymentRecord:
        """
        Confirm payment of the exact computed total.

        Raises:
            AmountMismatchError: the offered or the charged amount differs from the quote
        """
        async with self._operation("process_payment") as op:
            draft = op.draft
            if draft.current_step is not FormationStep.CERTIFICATE_APPROVED:
                raise InvalidStateError(
                    "The certificate must be approved before payment",
                    details={"current_step": draft.current_step.value},
                    suggestion="Review and approve the certificate first.",
                )
            if draft.payment_status is PaymentStatus.COMPLETED:
                raise InvalidStateError(
                    "Payment has already been completed",
                    details={"transaction_id": draft.payment.transaction_id if draft.payment else None},
                )

            costs = compute_costs(
                draft.company_details.jurisdiction,
                self.settings.service_fee,
                self.settings.expedite_fee,
                expedite=expedite,
            )
            offered = Decimal(str(amount))
            if offered != costs.total:
                raise AmountMismatchError(costs.total, offered)

            try:
                confirmation = await self.collaborators.payments.confirm_payment(
                    draft.session_id,
                    costs.total,
                    PaymentMethod(method),
                    instrument,
                    idempotency_key=f"payment-{draft.session_id}",
                )
            except CollaboratorRejectedError:
                draft.payment_status = PaymentStatus.FAILED
                await self._commit(op)
                raise
            if confirmation.amount != costs.total:
                raise AmountMismatchError(costs.total, confirmation.amount)

            draft.payment = PaymentRecord(
                transaction_id=confirmation.transaction_id,
                amount=confirmation.amount,
                method=PaymentMethod(method),
                instrument=instrument,
                breakdown=costs,
                processed_at=self.clock(),
            )
            draft.payment_status = PaymentStatus.COMPLETED
            draft.expedite = expedite
            draft.status = SessionStatus.PAYMENT_COMPLETE
            op.emit(
                EventKind.PAYMENT_COMPLETE,
                transaction_id=confirmation.transaction_id,
                amount=str(confirmation.amount),
            )
        return self._session.payment

    # --------------------------------------------------------------- filing

    async def submit_formation(self) -> SubmissionResult:
        """
        Generate the filing documents and submit the formation.

        The idempotency key is generated once per session and reused on every
        retry. A transient failure returns the session to payment_complete so
        the call can be repeated; a rejection by the filing authority marks the
        session failed.
        """
        async with self._operation("submit_formation") as op:
            draft = op.draft
            if draft.payment_status is not PaymentStatus.COMPLETED or draft.status not in (
                SessionStatus.PAYMENT_COMPLETE,
                SessionStatus.FILING_IN_PROGRESS,
            ):
                raise InvalidStateError(
                    "Payment must be completed before filing",
                    details={"status": draft.status.value},
                    suggestion="Complete payment, then submit the formation.",
                    code="PAYMENT_REQUIRED",
                )
            payload = build_formation_payload(draft, include_tax_ids=True)

            if draft.filing_idempotency_key is None:
                draft.filing_idempotency_key = make_idempotency_key(draft.session_id, self.clock())
            draft.status = SessionStatus.FILING_IN_PROGRESS
            draft.last_error = None
            await self._commit(op)
            key = op.draft.filing_idempotency_key

            try:
                op.emit(
                    EventKind.PROGRESS_UPDATE,
                    progress=progress(op.draft),
                    message="Generating incorporation documents...",
                )
                documents = await self.collaborators.documents.generate_documents(payload)
                op.draft.documents = documents
                op.emit(
                    EventKind.DOCUMENTS_GENERATED,
                    documents=[d.document_id for d in documents],
                )

                op.emit(
                    EventKind.PROGRESS_UPDATE,
                    progress=progress(op.draft),
                    message="Submitting documents to state...",
                )
                result = await self.collaborators.filing.submit_filing(payload, key)
            except CollaboratorRejectedError as e:
                op.draft.status = SessionStatus.FAILED
                op.draft.last_error = e.to_dict()
                clear_sensitive_data(op.draft)
                await self._commit(op)
                raise
            except DomainException as e:
                op.draft.status = SessionStatus.PAYMENT_COMPLETE
                op.draft.last_error = e.to_dict()
                await self._commit(op)
                raise

            op.draft.submission_result = result
            self._move_to(op, FormationStep.COMPLETED)
            clear_sensitive_data(op.draft)
            op.emit(
                EventKind.FILING_COMPLETE,
                filing_id=result.filing_id,
                status=result.status.value,
                confirmation_number=result.confirmation_number,
            )
        self.logger.info("formation_submitted", filing_id=result.filing_id)
        return result

    async def refresh_filing_status(self) -> SubmissionResult:
        async with self._operation("refresh_filing_status", allow_terminal=True) as op:
            submission = op.draft.submission_result
            if submission is None:
                raise InvalidStateError(
                    "No filing has been submitted for this session",
                    suggestion="Submit the formation first.",
                )
            result = await self.collaborators.filing.get_filing_status(
                submission.filing_id, submission.idempotency_key
            )
            result.submitted_at = submission.submitted_at
            op.draft.submission_result = result
            op.emit(
                EventKind.PROGRESS_UPDATE,
                progress=progress(op.draft),
                message=result.message,
                filing_status=result.status.value,
            )
        return result

    async def abandon(self, reason: Optional[str] = None) -> None:
        async with self._operation("abandon") as op:
            op.draft.status = SessionStatus.ABANDONED
            op.draft.last_error = {"reason": reason} if reason else None
            clear_sensitive_data(op.draft)
        self.logger.info("formation_abandoned", reason=reason)

    # ---------------------------------------------------------------- views

    def progress(self) -> int:
        return progress(self._session)

    def next_steps(self) -> List[str]:
        """Follow-up actions once the company is formed."""
        steps = list(POST_FORMATION_STEPS)
        details = self._session.company_details
        if details and details.jurisdiction is Jurisdiction.NY:
            steps.append("Complete the publication requirement (New York)")
        if details and details.entity_type is EntityType.S_CORP:
            steps.append("File Form 2553 with the IRS within 2 months and 15 days")
        return steps

    def summary(self) -> Dict[str, Any]:
        """Review summary with sensitive values masked."""
        session = self._session
        details = session.company_details
        now = self.clock()

        costs = None
        if details and details.jurisdiction:
            costs = self.quote().model_dump(mode="json")

        certificate = None
        if session.certificate_data:
            certificate = {
                "certificate_id": session.certificate_data.certificate_id,
                "download_url": session.certificate_data.download_url,
                "minutes_remaining": session.certificate_data.minutes_remaining(now),
                "approved_at": (
                    session.certificate_data.approved_at.isoformat()
                    if session.certificate_data.approved_at
                    else None
                ),
            }

        upcoming = next_step(session)
        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "current_step": session.current_step.value,
            "progress": progress(session),
            "next_step": upcoming.value if upcoming else None,
            "edit_targets": [step.value for step in edit_targets(session)],
            "company": {
                "name": details.full_name if details else None,
                "jurisdiction": details.jurisdiction.value if details and details.jurisdiction else None,
                "entity_type": details.entity_type.value if details and details.entity_type else None,
                "recommended_entity_type": (
                    details.recommended_entity_type.value
                    if details and details.recommended_entity_type
                    else None
                ),
                "purpose": details.purpose if details else None,
            },
            "shareholders": [
                {
                    "id": s.id,
                    "name": s.full_name,
                    "ownership_percentage": s.ownership_percentage,
                    "role": s.role.value,
                    "tax_id_last4": mask_tail(s.tax_id.get_secret_value()) if s.tax_id else None,
                }
                for s in session.shareholders
            ],
            "total_ownership": session.total_ownership(),
            "registered_agent": session.registered_agent.name if session.registered_agent else None,
            "authorized_party": session.authorized_party.name if session.authorized_party else None,
            "costs": costs,
            "certificate": certificate,
            "payment_status": session.payment_status.value if session.payment_status else None,
            "filing": session.submission_result.model_dump(mode="json") if session.submission_result else None,
            "missing_fields": missing_required_fields(session),
            "expires_at": session.expires_at.isoformat(),
        }


def _coerce(model, value: Any, field: str):
    """Accept a model instance or a plain mapping; invalid input becomes a field-level ValidationError."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first["loc"])
        raise ValidationError(
            f"{field}.{location}" if location else field,
            first["msg"],
            details={"invalid_fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
        ) from e
