"""
Certificate review sub-workflow.

Generate a reviewable certificate, stand up the local review surface, open a
viewer and wait for approve or cancel, bounded by a hard deadline. The surface
is torn down on every exit path; approval is never assumed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, AsyncContextManager, Callable, Optional

import structlog

from formation_engine.core.config import Settings
from formation_engine.core.exceptions import (
    CertificateError,
    CertificateExpiredError,
    RequiredFieldError,
    ReviewTimeoutError,
)
from formation_engine.domain.payloads import missing_required_fields
from formation_engine.domain.schemas import CertificateSessionData, utcnow

from .gate import ReviewGate, ReviewOutcome
from .server import CertificateReviewServer
from .viewer import open_viewer, print_link

if TYPE_CHECKING:
    from formation_engine.services.orchestration.orchestrator import FormationOrchestrator

logger = structlog.get_logger(__name__)

SurfaceFactory = Callable[[ReviewGate, CertificateSessionData], AsyncContextManager]


@dataclass
class CertificateReviewResult:
    outcome: ReviewOutcome
    certificate: CertificateSessionData

    @property
    def approved(self) -> bool:
        return self.outcome is ReviewOutcome.APPROVED


def default_surface_factory(settings: Settings) -> SurfaceFactory:
    def factory(gate: ReviewGate, certificate: CertificateSessionData) -> CertificateReviewServer:
        return CertificateReviewServer(gate, certificate, host=settings.review_host, port=settings.review_port)

    return factory


async def review_certificate(
    orchestrator: "FormationOrchestrator",
    settings: Settings,
    surface_factory: Optional[SurfaceFactory] = None,
    opener: Optional[Callable[[str], bool]] = None,
    deadline_seconds: Optional[float] = None,
    clock: Callable[[], datetime] = utcnow,
) -> CertificateReviewResult:
    """
    Run one review attempt for the orchestrator's session.

    Returns:
        Result with outcome approved (session advanced to certificate_approved)
        or cancelled (session left at review so data can be edited)

    Raises:
        RequiredFieldError: the session lacks data the certificate needs
        CertificateExpiredError: the generated certificate is already expired
        ReviewTimeoutError: no decision before the deadline
        CertificateError: the review surface reported an error
    """
    missing = missing_required_fields(orchestrator.session)
    if missing:
        raise RequiredFieldError(missing[0])

    certificate = await orchestrator.generate_certificate()
    if certificate.is_expired(clock()):
        raise CertificateExpiredError(certificate.certificate_id)

    deadline = settings.review_deadline_seconds if deadline_seconds is None else deadline_seconds
    factory = surface_factory or default_surface_factory(settings)
    if opener is None:
        opener = open_viewer if settings.review_open_browser else print_link

    gate = ReviewGate(orchestrator.session_id, certificate.certificate_id)
    log = logger.bind(session_id=orchestrator.session_id, certificate_id=certificate.certificate_id)
    log.info("certificate_review_started", deadline_seconds=deadline)

    async with factory(gate, certificate) as surface:
        try:
            opener(getattr(surface, "url", None) or certificate.download_url)
            await asyncio.wait_for(gate.wait(), timeout=deadline)
        except asyncio.TimeoutError:
            gate.expire()
        except Exception as e:
            gate.fail("CERTIFICATE_REVIEW_ERROR", str(e))
            raise

    outcome = gate.outcome
    log.info("certificate_review_resolved", outcome=outcome.value)

    if outcome is ReviewOutcome.APPROVED:
        approved = await orchestrator.approve_certificate(certificate.certificate_id)
        return CertificateReviewResult(outcome=outcome, certificate=approved)
    if outcome is ReviewOutcome.CANCELLED:
        return CertificateReviewResult(outcome=outcome, certificate=certificate)
    if outcome is ReviewOutcome.TIMED_OUT:
        raise ReviewTimeoutError(deadline)
    raise CertificateError(
        gate.error_message or "Certificate review failed",
        code=gate.error_code or "CERTIFICATE_REVIEW_ERROR",
        suggestion="Start the certificate review again.",
    )
