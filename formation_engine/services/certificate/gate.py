"""
Single-use approval gate for a certificate review.

The gate pairs a CertificateReviewMachine with an asyncio future. The first
signal (approve, cancel, expire or fail) moves the machine into a final state
and resolves the future; every later signal is ignored and reported as such.
"""

import asyncio
from enum import Enum
from typing import Optional

import structlog

from formation_engine.state_machines.review_flow import CertificateReviewMachine

logger = structlog.get_logger(__name__)


class ReviewOutcome(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


class ReviewGate:
    def __init__(self, session_id: str, certificate_id: str):
        self.session_id = session_id
        self.certificate_id = certificate_id
        self.machine = CertificateReviewMachine(record=self)
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.ignored_signals = 0

    @property
    def resolved(self) -> bool:
        return self.machine.resolved

    @property
    def outcome(self) -> ReviewOutcome:
        return ReviewOutcome(self.machine.state_value)

    @property
    def outcome_value(self) -> str:
        return self.outcome.value

    @property
    def error_code(self) -> Optional[str]:
        return self.machine.error_code

    @property
    def error_message(self) -> Optional[str]:
        return self.machine.error_message

    def _resolve(self, event: str, **kwargs) -> bool:
        if self.resolved:
            self.ignored_signals += 1
            logger.info(
                "review_signal_ignored",
                signal=event,
                outcome=self.outcome_value,
                session_id=self.session_id,
            )
            return False
        self.machine.send(event, **kwargs)
        if not self._future.done():
            self._future.set_result(self.outcome)
        return True

    def approve(self) -> bool:
        return self._resolve("approve")

    def cancel(self) -> bool:
        return self._resolve("cancel")

    def expire(self) -> bool:
        return self._resolve("expire")

    def fail(self, error_code: str, error_message: str) -> bool:
        return self._resolve("fail", error_code=error_code, error_message=error_message)

    async def wait(self) -> ReviewOutcome:
        """Wait for the first signal; cancelling the wait leaves the gate pending."""
        return await asyncio.shield(self._future)
