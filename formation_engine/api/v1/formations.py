"""
Formation API endpoints.

The remote tool-call surface over the orchestrator: one POST per workflow
operation, plus session listing, quotes, filing status and backups.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from formation_engine.api.dependencies import (
    OrchestratorRegistry,
    get_orchestrator,
    get_owner_id,
    get_registry,
    get_store,
)
from formation_engine.domain.schemas import (
    Address,
    AuthorizedParty,
    CamelCaseModel,
    EntityType,
    FormationStep,
    Jurisdiction,
    PaymentMethod,
    RegisteredAgent,
    SessionStatus,
    ShareholderRole,
    ShareStructure,
)
from formation_engine.infrastructure.session_store import SessionStore
from formation_engine.services.orchestration import FormationOrchestrator
from formation_engine.state_machines.registry import get_flow_machine

router = APIRouter(prefix="/formations", tags=["formations"])
logger = structlog.get_logger(__name__)


class CreateFormationRequest(CamelCaseModel):
    owner_id: Optional[str] = None


class DescribeBusinessRequest(CamelCaseModel):
    description: str


class JurisdictionRequest(CamelCaseModel):
    jurisdiction: Jurisdiction


class EntityTypeRequest(CamelCaseModel):
    entity_type: EntityType


class CompanyNameRequest(CamelCaseModel):
    base_name: str
    entity_ending: Optional[str] = None


class CompanyAddressRequest(CamelCaseModel):
    address: Address
    purpose: Optional[str] = None
    effective_date: Optional[date] = None


class RegisteredAgentRequest(CamelCaseModel):
    agent: Optional[RegisteredAgent] = None


class ShareStructureRequest(CamelCaseModel):
    share_structure: Optional[ShareStructure] = None


class ShareholderRequest(CamelCaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    ownership_percentage: float
    address: Address
    role: ShareholderRole = ShareholderRole.MEMBER
    tax_id: Optional[str] = None


class ShareholderUpdateRequest(CamelCaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    ownership_percentage: Optional[float] = None
    address: Optional[Address] = None
    role: Optional[ShareholderRole] = None
    tax_id: Optional[str] = None


class AuthorizedPartyRequest(CamelCaseModel):
    name: str
    title: str
    email: Optional[str] = None


class EditStepRequest(CamelCaseModel):
    step: FormationStep


class ApproveCertificateRequest(CamelCaseModel):
    certificate_id: Optional[str] = None


class PaymentRequest(CamelCaseModel):
    amount: Decimal
    method: PaymentMethod = PaymentMethod.CARD
    instrument: Optional[str] = None
    expedite: bool = False


class AbandonRequest(CamelCaseModel):
    reason: Optional[str] = None


def _respond(orchestrator: FormationOrchestrator, **extra: Any) -> Dict[str, Any]:
    return {**extra, "session": orchestrator.summary()}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_formation(
    body: Optional[CreateFormationRequest] = None,
    owner_id: Optional[str] = Depends(get_owner_id),
    registry: OrchestratorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Start a new formation session owned by the X-Owner-Id caller."""
    orchestrator = await registry.start(owner_id=owner_id or (body.owner_id if body else None))
    return _respond(orchestrator)


@router.get("")
async def list_formations(
    status_filter: Optional[SessionStatus] = Query(default=None, alias="status"),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    owner_id: Optional[str] = Depends(get_owner_id),
    store: SessionStore = Depends(get_store),
) -> Dict[str, Any]:
    sessions = await store.list_sessions(status=status_filter, limit=limit, owner_id=owner_id)
    return {
        "sessions": [
            {
                "session_id": s.session_id,
                "status": s.status.value,
                "current_step": s.current_step.value,
                "company_name": s.company_details.full_name if s.company_details else None,
                "updated_at": s.updated_at.isoformat(),
                "expires_at": s.expires_at.isoformat(),
            }
            for s in sessions
        ]
    }


@router.post("/cleanup")
async def cleanup_formations(registry: OrchestratorRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Retention sweep; only sessions past the retention window are removed."""
    deleted = await registry.store.cleanup_expired()
    evicted = await registry.prune()
    return {"deleted": deleted, "evicted": evicted}


@router.post("/backups/{backup_id}/restore")
async def restore_formation(
    backup_id: str,
    owner_id: Optional[str] = Depends(get_owner_id),
    registry: OrchestratorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Recover a session from a backup; the cached orchestrator is dropped."""
    backup = await registry.store.read_backup(backup_id)
    machine = get_flow_machine("formation", record=backup)
    if owner_id and not machine.is_owner(owner_id):
        logger.warning("formation_restore_denied", session_id=backup.session_id, owner_id=owner_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to restore this formation",
        )
    session = await registry.store.restore_from_backup(backup_id)
    registry.forget(session.session_id)
    orchestrator = await registry.get(session.session_id)
    return _respond(orchestrator)


@router.get("/{session_id}")
async def get_formation(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return _respond(orchestrator)


@router.get("/{session_id}/flow")
async def get_formation_flow(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Current step, progress and allowed moves as seen by the step graph."""
    machine = get_flow_machine("formation", record=orchestrator.session)
    return machine.get_flow_info()


@router.get("/{session_id}/backups")
async def list_formation_backups(
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return {"backups": await orchestrator.store.list_backups(orchestrator.session_id)}


@router.post("/{session_id}/business-description")
async def describe_business(
    body: DescribeBusinessRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    recommended = await orchestrator.describe_business(body.description)
    return _respond(orchestrator, recommended_entity_type=recommended.value)


@router.post("/{session_id}/jurisdiction")
async def select_jurisdiction(
    body: JurisdictionRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.select_jurisdiction(body.jurisdiction)
    return _respond(orchestrator)


@router.post("/{session_id}/entity-type")
async def select_entity_type(
    body: EntityTypeRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.select_entity_type(body.entity_type)
    return _respond(orchestrator)


@router.post("/{session_id}/name")
async def set_company_name(
    body: CompanyNameRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    full_name = await orchestrator.set_company_name(body.base_name, body.entity_ending)
    return _respond(orchestrator, company_name=full_name)


@router.post("/{session_id}/name-check")
async def check_name(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    result = await orchestrator.check_name()
    return _respond(orchestrator, name_check=result.model_dump(mode="json"))


@router.post("/{session_id}/address")
async def set_company_address(
    body: CompanyAddressRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.set_company_address(body.address, body.purpose, body.effective_date)
    return _respond(orchestrator)


@router.post("/{session_id}/registered-agent")
async def set_registered_agent(
    body: Optional[RegisteredAgentRequest] = None,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.set_registered_agent(body.agent if body else None)
    return _respond(orchestrator)


@router.post("/{session_id}/share-structure")
async def set_share_structure(
    body: Optional[ShareStructureRequest] = None,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.set_share_structure(body.share_structure if body else None)
    return _respond(orchestrator)


@router.post("/{session_id}/shareholders", status_code=status.HTTP_201_CREATED)
async def add_shareholder(
    body: ShareholderRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    shareholder = await orchestrator.add_shareholder(body.model_dump())
    return _respond(orchestrator, shareholder_id=shareholder.id)


@router.patch("/{session_id}/shareholders/{shareholder_id}")
async def update_shareholder(
    shareholder_id: str,
    body: ShareholderUpdateRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.update_shareholder(shareholder_id, **body.model_dump(exclude_unset=True))
    return _respond(orchestrator)


@router.delete("/{session_id}/shareholders/{shareholder_id}")
async def remove_shareholder(
    shareholder_id: str,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.remove_shareholder(shareholder_id)
    return _respond(orchestrator)


@router.post("/{session_id}/authorized-party")
async def set_authorized_party(
    body: AuthorizedPartyRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.set_authorized_party(AuthorizedParty(**body.model_dump()))
    return _respond(orchestrator)


@router.post("/{session_id}/advance")
async def advance(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    await orchestrator.advance()
    return _respond(orchestrator)


@router.post("/{session_id}/edit")
async def edit_step(
    body: EditStepRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.edit_step(body.step)
    return _respond(orchestrator)


@router.post("/{session_id}/certificate")
async def generate_certificate(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    certificate = await orchestrator.generate_certificate()
    return _respond(orchestrator, certificate=certificate.model_dump(mode="json"))


@router.post("/{session_id}/certificate/approve")
async def approve_certificate(
    body: Optional[ApproveCertificateRequest] = None,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    certificate = await orchestrator.approve_certificate(body.certificate_id if body else None)
    return _respond(orchestrator, certificate=certificate.model_dump(mode="json"))


@router.get("/{session_id}/quote")
async def quote(
    expedite: Optional[bool] = None,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.quote(expedite).model_dump(mode="json")


@router.post("/{session_id}/payment")
async def process_payment(
    body: PaymentRequest,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    payment = await orchestrator.process_payment(body.amount, body.method, body.instrument, body.expedite)
    return _respond(
        orchestrator,
        payment={"transaction_id": payment.transaction_id, "amount": str(payment.amount)},
    )


@router.post("/{session_id}/submit")
async def submit_formation(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    result = await orchestrator.submit_formation()
    return _respond(orchestrator, filing=result.model_dump(mode="json"), next_steps=orchestrator.next_steps())


@router.get("/{session_id}/filing")
async def refresh_filing_status(
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    result = await orchestrator.refresh_filing_status()
    return _respond(orchestrator, filing=result.model_dump(mode="json"))


@router.post("/{session_id}/abandon")
async def abandon(
    body: Optional[AbandonRequest] = None,
    orchestrator: FormationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    await orchestrator.abandon(body.reason if body else None)
    return _respond(orchestrator)


@router.get("/{session_id}/next-steps")
async def next_steps(orchestrator: FormationOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return {"progress": orchestrator.progress(), "next_steps": orchestrator.next_steps()}
