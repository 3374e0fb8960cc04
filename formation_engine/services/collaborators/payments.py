"""Payment confirmation client."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog

from formation_engine.core.exceptions import CollaboratorResponseError
from formation_engine.domain.schemas import PaymentMethod

from .base import CollaboratorClient

logger = structlog.get_logger(__name__)


@dataclass
class PaymentConfirmation:
    transaction_id: str
    amount: Decimal
    status: str


class PaymentClient(CollaboratorClient):
    service_name = "payment"

    async def confirm_payment(
        self,
        session_id: str,
        amount: Decimal,
        method: PaymentMethod,
        instrument: Optional[str],
        idempotency_key: str,
    ) -> PaymentConfirmation:
        """
        Charge the payment instrument and report the amount actually charged.
        """
        body = await self._request(
            "POST",
            "/payments",
            json={
                "session_id": session_id,
                "amount": str(amount),
                "currency": "USD",
                "method": method.value,
                "instrument": instrument,
            },
            idempotency_key=idempotency_key,
        )

        try:
            charged = Decimal(str(body["amount"]))
            transaction_id = str(body["transaction_id"])
        except (KeyError, InvalidOperation) as e:
            raise CollaboratorResponseError(
                self.service_name, "Payment response is missing amount or transaction_id"
            ) from e

        logger.info(
            "payment_confirmed",
            session_id=session_id,
            transaction_id=transaction_id,
            amount=str(charged),
        )
        return PaymentConfirmation(
            transaction_id=transaction_id,
            amount=charged,
            status=str(body.get("status", "completed")),
        )
