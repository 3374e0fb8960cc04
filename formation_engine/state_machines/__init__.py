from .base import FlowMachine
from .formation_flow import (
    CORPORATION_STEPS,
    LLC_STEPS,
    FormationFlowMachine,
    TransitionResult,
    can_advance,
    check_ownership,
    edit_targets,
    is_step_satisfied,
    next_step,
    progress,
    steps_for,
    transition,
)
from .registry import FLOW_REGISTRY, get_flow_machine
from .review_flow import CertificateReviewMachine

__all__ = [
    "FlowMachine",
    "FormationFlowMachine",
    "CertificateReviewMachine",
    "TransitionResult",
    "CORPORATION_STEPS",
    "LLC_STEPS",
    "FLOW_REGISTRY",
    "can_advance",
    "check_ownership",
    "edit_targets",
    "get_flow_machine",
    "is_step_satisfied",
    "next_step",
    "progress",
    "steps_for",
    "transition",
]
