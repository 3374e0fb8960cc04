"""
Base state machine class for all flow state machines.

Provides common functionality for transition logging and flow info retrieval.
"""

from typing import Any, Dict, Optional

import structlog
from statemachine import StateMachine


class FlowMachine(StateMachine):
    """
    Base class for all flow state machines.

    The machine keeps its own internal state model; subclasses mirror the
    active state onto the record they drive (see ``record``).
    """

    def __init__(
        self,
        record: Any = None,
        user_id: Optional[str] = None,
        **kwargs
    ):
        """
        Initialize flow machine.

        Args:
            record: Domain object driven by the flow (e.g. FormationSession)
            user_id: Owner ID for logging
            **kwargs: Additional context passed to StateMachine (start_value, ...)
        """
        self.record = record
        self.user_id = user_id
        self.logger = structlog.get_logger(__name__)
        self.error_code: Optional[str] = None
        self.error_message: Optional[str] = None
        super().__init__(**kwargs)

    @property
    def state_value(self) -> str:
        return self.current_state_value

    def record_id(self) -> Optional[str]:
        return getattr(self.record, "session_id", None) or getattr(self.record, "id", None)

    def get_flow_info(self) -> Dict[str, Any]:
        """
        Returns current state for API responses.
        """
        return {
            "state": self.state_value,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }

    def log_transition(self, event: str, from_state: str, to_state: str):
        self.logger.info(
            "state_transition",
            flow=type(self).__name__,
            transition_event=event,
            from_state=from_state,
            to_state=to_state,
            user_id=self.user_id,
            record_id=self.record_id(),
        )

    def is_owner(self, user_id: str) -> bool:
        """
        Guard: Check if user owns this record.
        """
        owner_id = getattr(self.record, "owner_id", None)
        return owner_id is None or owner_id == user_id or self.user_id == user_id
