"""
Typed notification stream published by the orchestrator.

Listeners subscribe to an EventBus and receive every FormationEvent; a
listener that raises is logged and skipped so it can never affect the
orchestrator or the other listeners.
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from formation_engine.domain.schemas import utcnow

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    STEP_CHANGED = "step_changed"
    STATUS_CHANGED = "status_changed"
    NAME_CHECK_COMPLETE = "name_check_complete"
    PAYMENT_COMPLETE = "payment_complete"
    DOCUMENTS_GENERATED = "documents_generated"
    FILING_COMPLETE = "filing_complete"
    PROGRESS_UPDATE = "progress_update"
    ERROR = "error"


@dataclass(frozen=True)
class FormationEvent:
    kind: EventKind
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "session_id": self.session_id,
            "data": self.data,
            "occurred_at": self.occurred_at.isoformat(),
        }


Listener = Callable[[FormationEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by EventBus.subscribe; cancel() detaches the listener."""

    def __init__(self, bus: "EventBus", listener: Listener, kinds: Optional[frozenset]):
        self._bus = bus
        self.listener = listener
        self.kinds = kinds
        self.active = True

    def wants(self, event: FormationEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._bus._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()


class EventBus:
    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def subscribe(self, listener: Listener, *kinds: EventKind) -> Subscription:
        """
        Attach a listener, optionally filtered to some event kinds.

        Listeners may be plain callables or coroutine functions.
        """
        subscription = Subscription(self, listener, frozenset(EventKind(k) for k in kinds) or None)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event: FormationEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active or not subscription.wants(event):
                continue
            try:
                result = subscription.listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_listener_failed",
                    kind=event.kind.value,
                    session_id=event.session_id,
                    error=str(e),
                    exc_info=e,
                )

    async def emit(self, kind: EventKind, session_id: str, **data: Any) -> FormationEvent:
        event = FormationEvent(kind=kind, session_id=session_id, data=data)
        await self.publish(event)
        return event
