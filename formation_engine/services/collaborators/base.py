"""
Shared HTTP plumbing for collaborator services.

Every call has a bounded timeout and runs inside a tenacity retry loop that
only retries transient failures (network errors, 5xx, 429, 408). Whatever
happens, callers receive a parsed success body or a DomainException carrying
a retryable flag and a suggestion; raw httpx errors never escape.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from formation_engine.core.exceptions import (
    CollaboratorRejectedError,
    CollaboratorResponseError,
    CollaboratorTransientError,
)

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 5.0

    def wait(self):
        return wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, (CollaboratorTransientError, httpx.TransportError))


class CollaboratorClient:
    """Base JSON-over-HTTPS client for a collaborator service."""

    service_name = "collaborator"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "collaborator_retry",
            service=self.service_name,
            attempt=retry_state.attempt_number,
            next_delay=getattr(retry_state.next_action, "sleep", None),
            error=str(exc),
        )

    async def _send_once(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        response = await self.client.request(
            method,
            path,
            json=json,
            headers=headers,
            timeout=httpx.Timeout(self.timeout),
        )

        if is_retryable_status(response.status_code):
            raise CollaboratorTransientError(
                self.service_name,
                f"{self.service_name} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise CollaboratorResponseError(
                self.service_name,
                f"{self.service_name} returned a non-JSON response (HTTP {response.status_code})",
                details={"status_code": response.status_code},
            ) from e
        if not isinstance(body, dict):
            raise CollaboratorResponseError(self.service_name, f"{self.service_name} returned an unexpected payload")

        if response.status_code >= 400 or body.get("success") is not True:
            error = body.get("error") if isinstance(body.get("error"), dict) else {}
            raise CollaboratorRejectedError(
                self.service_name,
                error.get("message") or body.get("message") or f"{self.service_name} rejected the request",
                status_code=response.status_code,
                error_code=error.get("code") or body.get("code"),
            )
        return body

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send a request with retry on transient failures.

        Raises:
            CollaboratorTransientError: still failing after the last attempt (retryable)
            CollaboratorRejectedError: validation failure or success=false (not retried)
            CollaboratorResponseError: malformed response
        """
        headers = self._headers(idempotency_key)
        policy = self.retry_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.wait(),
            retry=retry_if_exception(_is_transient),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        body: Dict[str, Any] = {}
        try:
            async for attempt in retrying:
                with attempt:
                    body = await self._send_once(method, path, json, headers)
        except httpx.TimeoutException as e:
            logger.error("collaborator_timeout", service=self.service_name, path=path, timeout=self.timeout)
            raise CollaboratorTransientError(
                self.service_name,
                f"{self.service_name} did not respond within {self.timeout:g}s",
                code="API_TIMEOUT",
                suggestion="The service is slow right now. Please try again.",
            ) from e
        except httpx.TransportError as e:
            logger.error("collaborator_unreachable", service=self.service_name, path=path, error=str(e))
            raise CollaboratorTransientError(
                self.service_name,
                f"Could not reach {self.service_name}: {e}",
            ) from e
        except httpx.HTTPError as e:
            logger.error("collaborator_protocol_error", service=self.service_name, path=path, error=str(e))
            raise CollaboratorResponseError(
                self.service_name,
                f"{self.service_name} sent a response that could not be read: {e}",
                details={"error_type": type(e).__name__},
            ) from e
        except (CollaboratorTransientError, CollaboratorRejectedError, CollaboratorResponseError) as e:
            logger.error(
                "collaborator_request_failed",
                service=self.service_name,
                path=path,
                error_code=e.code,
                retryable=e.retryable,
                error=e.message,
            )
            raise

        logger.debug("collaborator_request_succeeded", service=self.service_name, path=path)
        return body
