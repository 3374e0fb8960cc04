from .events import EventBus, EventKind, FormationEvent, Subscription
from .orchestrator import FormationOrchestrator

__all__ = [
    "EventBus",
    "EventKind",
    "FormationEvent",
    "FormationOrchestrator",
    "Subscription",
]
