"""
Name availability client.

Availability lookups go to the name-check service; format rules are checked
locally first and never touch the network.
"""

import asyncio
import time
from datetime import datetime
from typing import List, Optional

import structlog

from formation_engine.core.exceptions import CollaboratorResponseError, DomainException
from formation_engine.domain.jurisdictions import validate_name_format
from formation_engine.domain.schemas import EntityType, Jurisdiction, NameCheckResult

from .base import CollaboratorClient

logger = structlog.get_logger(__name__)

MAX_SUGGESTIONS = 5

_VARIATION_WORDS = ("Group", "Holdings", "Ventures", "Solutions", "Technologies", "Enterprises")


def name_variations(base_name: str) -> List[str]:
    """Candidate alternates for an unavailable base name."""
    base = base_name.strip()
    last_word = base.split()[-1].lower() if base else ""
    variations = [f"{base} {word}" for word in _VARIATION_WORDS if word.lower() != last_word]
    variations.append(f"New {base}")
    return variations


class NameCheckClient(CollaboratorClient):
    service_name = "name_check"

    def validate_format(
        self,
        base_name: str,
        entity_ending: str,
        entity_type: EntityType,
        jurisdiction: Jurisdiction,
    ) -> List[str]:
        """Local entity-ending and format rules; no I/O."""
        return validate_name_format(base_name, entity_ending, entity_type, jurisdiction)

    async def check_availability(
        self,
        base_name: str,
        entity_ending: str,
        entity_type: EntityType,
        jurisdiction: Jurisdiction,
    ) -> NameCheckResult:
        full_name = f"{base_name} {entity_ending}"
        started = time.monotonic()
        body = await self._request(
            "POST",
            "/check",
            json={
                "name": full_name,
                "base_name": base_name,
                "entity_ending": entity_ending,
                "entity_type": entity_type.value,
                "jurisdiction": jurisdiction.value,
            },
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)

        available = body.get("available")
        if not isinstance(available, bool):
            raise CollaboratorResponseError(self.service_name, "name_check response is missing 'available'")

        checked_at: Optional[datetime] = None
        if body.get("checked_at"):
            try:
                checked_at = datetime.fromisoformat(str(body["checked_at"]).replace("Z", "+00:00"))
            except ValueError as e:
                raise CollaboratorResponseError(
                    self.service_name,
                    "name_check response has an unreadable 'checked_at'",
                    details={"checked_at": str(body["checked_at"])},
                ) from e

        result = NameCheckResult(
            name=body.get("name") or full_name,
            jurisdiction=jurisdiction,
            available=available,
            reason=body.get("reason"),
            response_time_ms=elapsed_ms,
            **({"checked_at": checked_at} if checked_at else {}),
        )
        logger.info(
            "name_check_complete",
            name=result.name,
            jurisdiction=jurisdiction.value,
            available=available,
            response_time_ms=elapsed_ms,
        )
        return result

    async def suggest_alternatives(
        self,
        base_name: str,
        entity_ending: str,
        entity_type: EntityType,
        jurisdiction: Jurisdiction,
        limit: int = MAX_SUGGESTIONS,
    ) -> List[str]:
        """
        Check name variations concurrently and return the available ones.

        Individual lookup failures are skipped; at most ``limit`` names are returned.
        """
        variations = name_variations(base_name)
        results = await asyncio.gather(
            *(
                self.check_availability(variation, entity_ending, entity_type, jurisdiction)
                for variation in variations
            ),
            return_exceptions=True,
        )

        suggestions = []
        for variation, result in zip(variations, results):
            if isinstance(result, DomainException):
                logger.warning("name_suggestion_check_failed", name=variation, error=result.message)
                continue
            if isinstance(result, BaseException):
                raise result
            if result.available:
                suggestions.append(result.name)
        return suggestions[:max(0, limit)]
