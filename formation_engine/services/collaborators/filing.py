"""Filing client: submits formations to the state authority and polls status."""

from datetime import datetime
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from formation_engine.core.exceptions import CollaboratorResponseError
from formation_engine.domain.payloads import CorporationFormationPayload, LLCFormationPayload
from formation_engine.domain.schemas import FilingStatus, SubmissionResult, utcnow

from .base import CollaboratorClient

logger = structlog.get_logger(__name__)

Payload = Union[LLCFormationPayload, CorporationFormationPayload]


def make_idempotency_key(session_id: str, at: Optional[datetime] = None) -> str:
    """Key that ties a filing to one formation attempt: filing-{session_id}-{epoch ms}."""
    moment = at or utcnow()
    return f"filing-{session_id}-{int(moment.timestamp() * 1000)}"


class FilingClient(CollaboratorClient):
    service_name = "filing"

    def _parse_submission(self, body: Dict[str, Any], idempotency_key: str) -> SubmissionResult:
        data = {
            "filing_id": body.get("filing_id"),
            "status": body.get("status") or FilingStatus.SUBMITTED.value,
            "idempotency_key": body.get("idempotency_key") or idempotency_key,
            "confirmation_number": body.get("confirmation_number"),
            "filed_at": body.get("filed_at"),
            "certificate_url": body.get("certificate_url"),
            "message": body.get("message"),
        }
        if body.get("submitted_at"):
            data["submitted_at"] = body["submitted_at"]
        try:
            return SubmissionResult.model_validate(data)
        except PydanticValidationError as e:
            raise CollaboratorResponseError(
                self.service_name,
                "Filing response is malformed",
                details={"invalid_fields": [".".join(str(p) for p in err["loc"]) for err in e.errors()]},
            ) from e

    async def submit_filing(self, payload: Payload, idempotency_key: str) -> SubmissionResult:
        """
        Submit the formation for filing.

        The idempotency key travels in the Idempotency-Key header so a retried or
        duplicated request cannot create a second filing.
        """
        body = await self._request(
            "POST",
            "/filings",
            json=payload.model_dump(mode="json"),
            idempotency_key=idempotency_key,
        )
        result = self._parse_submission(body, idempotency_key)
        logger.info(
            "filing_submitted",
            session_id=payload.session_id,
            filing_id=result.filing_id,
            status=result.status.value,
        )
        return result

    async def get_filing_status(self, filing_id: str, idempotency_key: str = "") -> SubmissionResult:
        body = await self._request("GET", f"/filings/{filing_id}")
        body.setdefault("filing_id", filing_id)
        return self._parse_submission(body, idempotency_key)

    async def cancel_filing(self, filing_id: str) -> bool:
        body = await self._request("POST", f"/filings/{filing_id}/cancel")
        logger.info("filing_cancelled", filing_id=filing_id)
        return bool(body.get("cancelled", True))
