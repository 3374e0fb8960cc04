"""
Certificate Review State Machine.

A single-use approval gate: pending resolves exactly once into approved,
cancelled, timed_out or errored. All outcomes are final, so a straggling
second signal finds no transition and is ignored by the caller.
"""

from typing import Any, Optional

from statemachine import State

from .base import FlowMachine


class CertificateReviewMachine(FlowMachine):
    """State machine for one certificate review attempt."""

    pending = State(initial=True, value="pending")
    approved = State(value="approved", final=True)
    cancelled = State(value="cancelled", final=True)
    timed_out = State(value="timed_out", final=True)
    errored = State(value="errored", final=True)

    approve = pending.to(approved)
    cancel = pending.to(cancelled)
    expire = pending.to(timed_out)
    fail = pending.to(errored)

    def __init__(self, record: Any = None, **kwargs):
        """
        Args:
            record: object identifying the review (certificate id, session id)
        """
        super().__init__(record=record, **kwargs)

    @property
    def resolved(self) -> bool:
        return self.state_value != "pending"

    def on_enter_errored(self, error_code: Optional[str] = None, error_message: Optional[str] = None):
        self.error_code = error_code
        self.error_message = error_message

    def after_transition(self, event, source: State, target: State):
        self.log_transition(str(event), source.value, target.value)
