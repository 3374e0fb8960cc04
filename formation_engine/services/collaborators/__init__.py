from dataclasses import dataclass
from typing import Optional

import httpx

from formation_engine.core.config import Settings

from .base import CollaboratorClient, RetryPolicy, is_retryable_status
from .documents import DocumentFillerClient
from .filing import FilingClient, make_idempotency_key
from .name_check import NameCheckClient, name_variations
from .payments import PaymentClient, PaymentConfirmation


@dataclass
class Collaborators:
    """The external services one orchestrator talks to."""

    name_check: NameCheckClient
    documents: DocumentFillerClient
    filing: FilingClient
    payments: PaymentClient

    async def aclose(self) -> None:
        for client in (self.name_check, self.documents, self.filing, self.payments):
            await client.aclose()


def build_collaborators(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Collaborators:
    """Construct every collaborator client from settings."""

    def policy(base_delay: float, max_delay: float) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=max_delay,
        )

    def http(base_url: str, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    return Collaborators(
        name_check=NameCheckClient(
            settings.name_check_api_url,
            api_key=settings.name_check_api_key,
            timeout=settings.name_check_timeout,
            retry_policy=policy(settings.name_check_retry_base_delay, settings.name_check_retry_max_delay),
            client=http(settings.name_check_api_url, settings.name_check_timeout),
        ),
        documents=DocumentFillerClient(
            settings.document_api_url,
            api_key=settings.document_api_key,
            timeout=settings.document_timeout,
            retry_policy=policy(settings.document_retry_base_delay, settings.document_retry_max_delay),
            client=http(settings.document_api_url, settings.document_timeout),
        ),
        filing=FilingClient(
            settings.filing_api_url,
            api_key=settings.filing_api_key,
            timeout=settings.filing_timeout,
            retry_policy=policy(settings.filing_retry_base_delay, settings.filing_retry_max_delay),
            client=http(settings.filing_api_url, settings.filing_timeout),
        ),
        payments=PaymentClient(
            settings.payment_api_url,
            api_key=settings.payment_api_key,
            timeout=settings.payment_timeout,
            retry_policy=policy(settings.payment_retry_base_delay, settings.payment_retry_max_delay),
            client=http(settings.payment_api_url, settings.payment_timeout),
        ),
    )


__all__ = [
    "CollaboratorClient",
    "Collaborators",
    "DocumentFillerClient",
    "FilingClient",
    "NameCheckClient",
    "PaymentClient",
    "PaymentConfirmation",
    "RetryPolicy",
    "build_collaborators",
    "is_retryable_status",
    "make_idempotency_key",
    "name_variations",
]
