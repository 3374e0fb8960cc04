"""
State machine registry for dynamic instantiation.

Provides factory function to create state machine instances by flow type.
"""

from typing import Any, Dict, Type

from .base import FlowMachine
from .formation_flow import FormationFlowMachine
from .review_flow import CertificateReviewMachine

FLOW_REGISTRY: Dict[str, Type[FlowMachine]] = {
    "formation": FormationFlowMachine,
    "certificate_review": CertificateReviewMachine,
}


def get_flow_machine(flow_type: str, record: Any = None, **kwargs) -> FlowMachine:
    """
    Factory to instantiate state machine by flow type.

    Raises:
        ValueError: If flow_type is not registered
    """
    if flow_type not in FLOW_REGISTRY:
        raise ValueError(
            f"Unknown flow type: {flow_type}. "
            f"Available: {list(FLOW_REGISTRY.keys())}"
        )
    return FLOW_REGISTRY[flow_type](record, **kwargs)
