"""
Collaborator request payloads.

The formation payload is a tagged union keyed by entity_type: share structure
and incorporator exist only on the corporation variant.
"""

from datetime import date
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from formation_engine.core.exceptions import RequiredFieldError

from .jurisdictions import DEFAULT_INCORPORATOR
from .schemas import (
    Address,
    AuthorizedParty,
    FormationSession,
    Incorporator,
    Jurisdiction,
    RegisteredAgent,
    ShareholderRole,
    ShareStructure,
)


class ShareholderPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    ownership_percentage: float
    address: Address
    role: ShareholderRole
    tax_id: Optional[str] = None


class _FormationPayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    owner_id: Optional[str] = None
    company_name: str
    jurisdiction: Jurisdiction
    purpose: str
    effective_date: Optional[date] = None
    company_address: Optional[Address] = None
    registered_agent: RegisteredAgent
    shareholders: List[ShareholderPayload]
    authorized_party: Optional[AuthorizedParty] = None


class LLCFormationPayload(_FormationPayloadBase):
    entity_type: Literal["LLC"] = "LLC"


class CorporationFormationPayload(_FormationPayloadBase):
    entity_type: Literal["C-Corp", "S-Corp"]
    share_structure: ShareStructure
    incorporator: Incorporator


FormationPayload = Annotated[
    Union[LLCFormationPayload, CorporationFormationPayload],
    Field(discriminator="entity_type"),
]

formation_payload_adapter: TypeAdapter = TypeAdapter(FormationPayload)


def missing_required_fields(session: FormationSession) -> List[str]:
    """Field paths a filing cannot go without, in the order a user would fix them."""
    details = session.company_details
    missing = []
    if not details or not details.full_name:
        missing.append("company_details.name")
    if not details or not details.jurisdiction:
        missing.append("company_details.jurisdiction")
    if not details or not details.entity_type:
        missing.append("company_details.entity_type")
    if not session.shareholders:
        missing.append("shareholders")
    if not session.registered_agent:
        missing.append("registered_agent")
    if session.is_corporation and not session.share_structure:
        missing.append("share_structure")
    return missing


def build_formation_payload(
    session: FormationSession,
    include_tax_ids: bool = False,
) -> Union[LLCFormationPayload, CorporationFormationPayload]:
    """
    Build the entity-specific payload for document generation and filing.

    Raises:
        RequiredFieldError: for the first structurally required field that is missing
    """
    missing = missing_required_fields(session)
    if missing:
        raise RequiredFieldError(missing[0])

    details = session.company_details
    shareholders = [
        ShareholderPayload(
            id=s.id,
            first_name=s.first_name,
            last_name=s.last_name,
            email=s.email,
            phone=s.phone,
            ownership_percentage=s.ownership_percentage,
            address=s.address,
            role=s.role,
            tax_id=s.tax_id.get_secret_value() if include_tax_ids and s.tax_id else None,
        )
        for s in session.shareholders
    ]
    common = dict(
        session_id=session.session_id,
        owner_id=session.owner_id,
        company_name=details.full_name,
        jurisdiction=details.jurisdiction,
        purpose=details.purpose,
        effective_date=details.effective_date,
        company_address=details.mailing_address,
        registered_agent=session.registered_agent,
        shareholders=shareholders,
        authorized_party=session.authorized_party,
    )

    if details.entity_type.is_corporation:
        return CorporationFormationPayload(
            entity_type=details.entity_type.value,
            share_structure=session.share_structure,
            incorporator=session.incorporator or DEFAULT_INCORPORATOR,
            **common,
        )
    return LLCFormationPayload(**common)
