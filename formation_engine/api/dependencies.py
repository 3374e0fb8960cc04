import asyncio
from typing import Dict, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from formation_engine.core.config import Settings
from formation_engine.infrastructure.session_store import SessionStore
from formation_engine.services.collaborators import Collaborators
from formation_engine.services.orchestration import EventBus, FormationOrchestrator
from formation_engine.state_machines.registry import get_flow_machine

logger = structlog.get_logger()


class OrchestratorRegistry:
    """
    One live orchestrator per session id, so requests for the same session
    are serialized by that orchestrator's lock.
    """

    def __init__(
        self,
        store: SessionStore,
        collaborators: Collaborators,
        events: EventBus,
        settings: Settings,
    ):
        self.store = store
        self.collaborators = collaborators
        self.events = events
        self.settings = settings
        self._orchestrators: Dict[str, FormationOrchestrator] = {}
        self._lock = asyncio.Lock()

    async def start(self, owner_id: Optional[str] = None) -> FormationOrchestrator:
        orchestrator = await FormationOrchestrator.start(
            self.store, self.collaborators, self.events, self.settings, owner_id=owner_id
        )
        self._orchestrators[orchestrator.session_id] = orchestrator
        return orchestrator

    async def get(self, session_id: str) -> FormationOrchestrator:
        """
        Live orchestrator for session_id, loading it from the store on first use.

        Raises:
            SessionNotFoundError: unknown session id
            SessionExpiredError: the session is past expires_at, cached or not
        """
        async with self._lock:
            self._evict_expired()
            orchestrator = self._orchestrators.get(session_id)
            if orchestrator is None:
                orchestrator = await FormationOrchestrator.resume(
                    session_id, self.store, self.collaborators, self.events, self.settings
                )
                self._orchestrators[session_id] = orchestrator
            return orchestrator

    def _evict_expired(self) -> int:
        """Drop cached orchestrators whose session has expired; the store decides what follows."""
        expired = [sid for sid, orchestrator in self._orchestrators.items() if orchestrator.is_expired()]
        for session_id in expired:
            del self._orchestrators[session_id]
            logger.info("orchestrator_evicted", session_id=session_id, reason="expired")
        return len(expired)

    async def prune(self) -> int:
        """Forget orchestrators whose stored record is gone or expired."""
        async with self._lock:
            evicted = self._evict_expired()
            live = set(await self.store.backend.list_ids())
            gone = [session_id for session_id in self._orchestrators if session_id not in live]
            for session_id in gone:
                del self._orchestrators[session_id]
            return evicted + len(gone)

    def forget(self, session_id: str) -> None:
        self._orchestrators.pop(session_id, None)


def get_registry(request: Request) -> OrchestratorRegistry:
    return request.app.state.registry


def get_store(registry: OrchestratorRegistry = Depends(get_registry)) -> SessionStore:
    return registry.store


async def get_owner_id(x_owner_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_owner_id


async def get_orchestrator(
    session_id: str,
    owner_id: Optional[str] = Depends(get_owner_id),
    registry: OrchestratorRegistry = Depends(get_registry),
) -> FormationOrchestrator:
    """
    Dependency resolving the orchestrator for a session the caller may access.

    Raises:
        HTTPException: 403 when the session belongs to another owner
    """
    orchestrator = await registry.get(session_id)
    machine = get_flow_machine("formation", record=orchestrator.session)
    if owner_id and not machine.is_owner(owner_id):
        logger.warning("formation_access_denied", session_id=session_id, owner_id=owner_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this formation",
        )
    return orchestrator
