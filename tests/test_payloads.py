"""
Tests for the entity-specific formation payload union.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from formation_engine.core.exceptions import RequiredFieldError
from formation_engine.domain.jurisdictions import DEFAULT_INCORPORATOR
from formation_engine.domain.payloads import (
    CorporationFormationPayload,
    LLCFormationPayload,
    build_formation_payload,
    formation_payload_adapter,
    missing_required_fields,
)
from formation_engine.domain.schemas import EntityType

from .conftest import complete_session


def test_llc_payload_has_no_share_fields():
    payload = build_formation_payload(complete_session(EntityType.LLC))

    assert isinstance(payload, LLCFormationPayload)
    assert payload.entity_type == "LLC"
    assert payload.company_name == "Acme Holdings LLC"
    assert "share_structure" not in payload.model_dump()
    assert "incorporator" not in payload.model_dump()


def test_corporation_payload_carries_share_structure_and_incorporator():
    payload = build_formation_payload(complete_session(EntityType.S_CORP))

    assert isinstance(payload, CorporationFormationPayload)
    assert payload.entity_type == "S-Corp"
    assert payload.share_structure.authorized_shares == 1000
    assert payload.incorporator == DEFAULT_INCORPORATOR


def test_union_dispatches_on_entity_type():
    corp = build_formation_payload(complete_session(EntityType.C_CORP)).model_dump(mode="json")
    llc = build_formation_payload(complete_session(EntityType.LLC)).model_dump(mode="json")

    assert isinstance(formation_payload_adapter.validate_python(corp), CorporationFormationPayload)
    assert isinstance(formation_payload_adapter.validate_python(llc), LLCFormationPayload)


def test_llc_payload_rejects_share_structure():
    data = build_formation_payload(complete_session(EntityType.LLC)).model_dump(mode="json")
    data["share_structure"] = {"authorized_shares": 1000, "par_value": "0.01"}

    with pytest.raises(PydanticValidationError):
        formation_payload_adapter.validate_python(data)


def test_corporation_payload_requires_share_structure():
    data = build_formation_payload(complete_session(EntityType.C_CORP)).model_dump(mode="json")
    del data["share_structure"]

    with pytest.raises(PydanticValidationError):
        formation_payload_adapter.validate_python(data)


def test_tax_ids_only_when_requested():
    session = complete_session()

    assert build_formation_payload(session).shareholders[0].tax_id is None
    assert build_formation_payload(session, include_tax_ids=True).shareholders[0].tax_id == "123-45-6789"


def test_missing_fields_in_fix_order():
    session = complete_session(EntityType.C_CORP, shareholders=[], registered_agent=None, share_structure=None)

    assert missing_required_fields(session) == ["shareholders", "registered_agent", "share_structure"]
    with pytest.raises(RequiredFieldError) as exc_info:
        build_formation_payload(session)
    assert exc_info.value.field == "shareholders"
    assert exc_info.value.code == "VALIDATION_REQUIRED_FIELD"
