"""
Formation Flow State Machine.

Steps form a strict linear sequence per entity type; corporations pass through
the shares step, LLCs skip it. From review (certificate generated) the user may
go back to any earlier data step to edit it. Forward skipping is never allowed.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import structlog
from statemachine import State
from statemachine.exceptions import TransitionNotAllowed

from formation_engine.core.exceptions import InvalidTransitionError, OwnershipError
from formation_engine.domain.jurisdictions import entity_types_for
from formation_engine.domain.schemas import (
    EntityType,
    FormationSession,
    FormationStep,
    SessionStatus,
    next_timestamp,
)

from .base import FlowMachine

logger = structlog.get_logger(__name__)

OWNERSHIP_TOLERANCE = 0.01

CORPORATION_STEPS: Tuple[FormationStep, ...] = (
    FormationStep.CREATED,
    FormationStep.BUSINESS_DESCRIBED,
    FormationStep.STATE_SELECTED,
    FormationStep.TYPE_SELECTED,
    FormationStep.NAME_SET,
    FormationStep.NAME_CHECKED,
    FormationStep.COMPANY_ADDRESS_SET,
    FormationStep.AGENT_SET,
    FormationStep.SHARES_SET,
    FormationStep.SHAREHOLDERS_ADDED,
    FormationStep.AUTHORIZED_PARTY_SET,
    FormationStep.CERTIFICATE_GENERATED,
    FormationStep.CERTIFICATE_APPROVED,
    FormationStep.COMPLETED,
)

LLC_STEPS: Tuple[FormationStep, ...] = tuple(
    step for step in CORPORATION_STEPS if step is not FormationStep.SHARES_SET
)

# Steps that can be revisited from review
EDITABLE_STEPS = frozenset(
    {
        FormationStep.BUSINESS_DESCRIBED,
        FormationStep.STATE_SELECTED,
        FormationStep.TYPE_SELECTED,
        FormationStep.NAME_SET,
        FormationStep.NAME_CHECKED,
        FormationStep.COMPANY_ADDRESS_SET,
        FormationStep.AGENT_SET,
        FormationStep.SHARES_SET,
        FormationStep.SHAREHOLDERS_ADDED,
        FormationStep.AUTHORIZED_PARTY_SET,
    }
)

STEP_STATUS: Dict[FormationStep, SessionStatus] = {
    FormationStep.CREATED: SessionStatus.CREATED,
    FormationStep.CERTIFICATE_GENERATED: SessionStatus.REVIEW,
    FormationStep.CERTIFICATE_APPROVED: SessionStatus.PAYMENT_PENDING,
    FormationStep.COMPLETED: SessionStatus.COMPLETED,
}

# Event that enters each step
TARGET_EVENTS: Dict[FormationStep, str] = {
    FormationStep.BUSINESS_DESCRIBED: "describe_business",
    FormationStep.STATE_SELECTED: "select_jurisdiction",
    FormationStep.TYPE_SELECTED: "select_entity_type",
    FormationStep.NAME_SET: "set_name",
    FormationStep.NAME_CHECKED: "check_name",
    FormationStep.COMPANY_ADDRESS_SET: "set_company_address",
    FormationStep.AGENT_SET: "set_agent",
    FormationStep.SHARES_SET: "set_shares",
    FormationStep.SHAREHOLDERS_ADDED: "add_owners",
    FormationStep.AUTHORIZED_PARTY_SET: "set_authorized_party",
    FormationStep.CERTIFICATE_GENERATED: "generate_certificate",
    FormationStep.CERTIFICATE_APPROVED: "approve_certificate",
    FormationStep.COMPLETED: "complete",
}


def status_for_step(step: FormationStep) -> SessionStatus:
    return STEP_STATUS.get(step, SessionStatus.IN_PROGRESS)


def steps_for(entity_type: Optional[EntityType]) -> Tuple[FormationStep, ...]:
    """Ordered steps for an entity type; the full corporation list until a type is chosen."""
    if entity_type is EntityType.LLC:
        return LLC_STEPS
    return CORPORATION_STEPS


def is_step_satisfied(session: FormationSession, step: FormationStep) -> bool:
    """Whether the data recorded by ``step`` is present and valid."""
    details = session.company_details
    if step is FormationStep.CREATED:
        return True
    if step is FormationStep.BUSINESS_DESCRIBED:
        return bool(details and details.business_description)
    if step is FormationStep.STATE_SELECTED:
        return bool(details and details.jurisdiction)
    if step is FormationStep.TYPE_SELECTED:
        return bool(
            details
            and details.jurisdiction
            and details.entity_type
            and details.entity_type in entity_types_for(details.jurisdiction)
        )
    if step is FormationStep.NAME_SET:
        return bool(details and details.full_name)
    if step is FormationStep.NAME_CHECKED:
        result = session.name_check_result
        return bool(
            details
            and result
            and result.available
            and result.name == details.full_name
            and result.jurisdiction == details.jurisdiction
        )
    if step is FormationStep.COMPANY_ADDRESS_SET:
        return bool(details and details.mailing_address)
    if step is FormationStep.AGENT_SET:
        return session.registered_agent is not None
    if step is FormationStep.SHARES_SET:
        return session.is_corporation and session.share_structure is not None
    if step is FormationStep.SHAREHOLDERS_ADDED:
        return len(session.shareholders) >= 1
    if step is FormationStep.AUTHORIZED_PARTY_SET:
        return session.authorized_party is not None
    if step is FormationStep.CERTIFICATE_GENERATED:
        return session.certificate_data is not None
    if step is FormationStep.CERTIFICATE_APPROVED:
        return bool(session.certificate_data and session.certificate_data.approved_at)
    if step is FormationStep.COMPLETED:
        return session.submission_result is not None
    return False


def can_advance(session: FormationSession) -> bool:
    """
    True when the data required by the current step is present.

    The aggregate ownership check is not part of this predicate; it is applied
    when leaving the owners step so shareholders can be added one at a time.
    """
    if session.current_step is FormationStep.COMPLETED:
        return False
    return is_step_satisfied(session, session.current_step)


def next_step(session: FormationSession) -> Optional[FormationStep]:
    """The single forward successor of the current step, None at the end."""
    steps = steps_for(session.entity_type)
    if session.current_step not in steps:
        return None
    index = steps.index(session.current_step)
    return steps[index + 1] if index + 1 < len(steps) else None


def edit_targets(session: FormationSession) -> List[FormationStep]:
    if session.current_step is not FormationStep.CERTIFICATE_GENERATED:
        return []
    return [step for step in steps_for(session.entity_type) if step in EDITABLE_STEPS]


def progress(session: FormationSession) -> int:
    """Percent through the type-specific step list: 0 at creation, 100 when completed."""
    steps = steps_for(session.entity_type)
    if session.current_step not in steps:
        return 0
    index = steps.index(session.current_step)
    return int(index * 100 / (len(steps) - 1) + 0.5)


def check_ownership(session: FormationSession) -> float:
    """
    Raises:
        OwnershipError: when ownership does not total 100% within tolerance
    """
    total = session.total_ownership()
    if not session.shareholders:
        raise OwnershipError(total, "At least one shareholder is required")
    if abs(total - 100) > OWNERSHIP_TOLERANCE:
        raise OwnershipError(total)
    return total


@dataclass
class TransitionResult:
    previous_step: FormationStep
    current_step: FormationStep
    previous_status: SessionStatus
    status: SessionStatus
    backward: bool = False

    @property
    def status_changed(self) -> bool:
        return self.previous_status is not self.status


class FormationFlowMachine(FlowMachine):
    """
    State machine for the formation workflow.

    States map to FormationSession.current_step; status is derived from the
    step and written together with it after every transition.
    """

    created = State(initial=True, value="created")
    business_described = State(value="business_described")
    state_selected = State(value="state_selected")
    type_selected = State(value="type_selected")
    name_set = State(value="name_set")
    name_checked = State(value="name_checked")
    company_address_set = State(value="company_address_set")
    agent_set = State(value="agent_set")
    shares_set = State(value="shares_set")
    shareholders_added = State(value="shareholders_added")
    authorized_party_set = State(value="authorized_party_set")
    certificate_generated = State(value="certificate_generated")
    certificate_approved = State(value="certificate_approved")
    completed = State(value="completed", final=True)

    describe_business = created.to(business_described) | certificate_generated.to(
        business_described
    )
    select_jurisdiction = business_described.to(state_selected) | certificate_generated.to(
        state_selected
    )
    select_entity_type = state_selected.to(type_selected) | certificate_generated.to(
        type_selected
    )
    set_name = type_selected.to(name_set) | certificate_generated.to(name_set)
    check_name = name_set.to(name_checked) | certificate_generated.to(name_checked)
    set_company_address = name_checked.to(company_address_set) | certificate_generated.to(
        company_address_set
    )
    set_agent = company_address_set.to(agent_set) | certificate_generated.to(agent_set)
    set_shares = agent_set.to(shares_set, cond="is_corporation") | certificate_generated.to(
        shares_set, cond="is_corporation"
    )
    add_owners = (
        agent_set.to(shareholders_added, cond="is_llc")
        | shares_set.to(shareholders_added)
        | certificate_generated.to(shareholders_added)
    )
    set_authorized_party = shareholders_added.to(
        authorized_party_set, cond="ownership_complete"
    ) | certificate_generated.to(authorized_party_set)
    generate_certificate = authorized_party_set.to(certificate_generated)
    approve_certificate = certificate_generated.to(certificate_approved)
    complete = certificate_approved.to(completed)

    def __init__(self, session: FormationSession, **kwargs):
        """
        Initialize formation flow machine positioned at the session's current step.

        Args:
            session: FormationSession to drive; mutated in place on transition
        """
        super().__init__(
            record=session,
            user_id=session.owner_id,
            start_value=session.current_step.value,
            **kwargs
        )

    @property
    def session(self) -> FormationSession:
        return self.record

    def is_corporation(self) -> bool:
        return self.session.is_corporation

    def is_llc(self) -> bool:
        return self.session.entity_type is EntityType.LLC

    def ownership_complete(self) -> bool:
        return abs(self.session.total_ownership() - 100) <= OWNERSHIP_TOLERANCE

    def after_transition(self, event, source: State, target: State):
        """Action: write step, status and updated_at together."""
        session = self.session
        session.current_step = FormationStep(target.value)
        session.status = status_for_step(session.current_step)
        session.updated_at = next_timestamp(session.updated_at)
        self.log_transition(str(event), source.value, target.value)

    def get_flow_info(self):
        info = super().get_flow_info()
        info.update(
            {
                "progress": progress(self.session),
                "next_step": getattr(next_step(self.session), "value", None),
                "can_advance": can_advance(self.session),
                "edit_targets": [step.value for step in edit_targets(self.session)],
            }
        )
        return info


def transition(session: FormationSession, target: FormationStep) -> TransitionResult:
    """
    Move ``session`` to ``target``, updating step and status together.

    Raises:
        InvalidTransitionError: target is neither the direct successor nor an edit target
        OwnershipError: leaving the owners step with ownership not totalling 100%
    """
    target = FormationStep(target)
    current = session.current_step
    backward = target in edit_targets(session)

    if not backward:
        if target is not next_step(session):
            raise InvalidTransitionError(current.value, target.value)
        if not can_advance(session):
            raise InvalidTransitionError(
                current.value,
                target.value,
                reason=f"Step {current.value} is not complete",
            )
        if current is FormationStep.SHAREHOLDERS_ADDED:
            check_ownership(session)
        if not is_step_satisfied(session, target):
            raise InvalidTransitionError(
                current.value,
                target.value,
                reason=f"Data required for {target.value} is missing",
            )

    previous_status = session.status
    machine = FormationFlowMachine(session)
    try:
        machine.send(TARGET_EVENTS[target])
    except TransitionNotAllowed as e:
        raise InvalidTransitionError(current.value, target.value) from e

    return TransitionResult(
        previous_step=current,
        current_step=session.current_step,
        previous_status=previous_status,
        status=session.status,
        backward=backward,
    )
