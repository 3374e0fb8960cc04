"""
Jurisdiction rules, entity endings, defaults and cost computation.

Pure data and functions; nothing here performs I/O.
"""

import re
from decimal import Decimal
from typing import Dict, List, Tuple

from .schemas import (
    Address,
    CostBreakdown,
    EntityType,
    Incorporator,
    Jurisdiction,
    RegisteredAgent,
    ShareStructure,
)

STATE_FILING_FEES: Dict[Jurisdiction, Decimal] = {
    Jurisdiction.DE: Decimal("90"),
    Jurisdiction.WY: Decimal("100"),
    Jurisdiction.CA: Decimal("70"),
    Jurisdiction.TX: Decimal("300"),
    Jurisdiction.NY: Decimal("200"),
    Jurisdiction.FL: Decimal("125"),
}

_ALL_TYPES = (EntityType.LLC, EntityType.C_CORP, EntityType.S_CORP)

JURISDICTION_ENTITY_TYPES: Dict[Jurisdiction, Tuple[EntityType, ...]] = {
    Jurisdiction.DE: _ALL_TYPES,
    Jurisdiction.WY: (EntityType.LLC,),
    Jurisdiction.CA: _ALL_TYPES,
    Jurisdiction.TX: _ALL_TYPES,
    Jurisdiction.NY: _ALL_TYPES,
    Jurisdiction.FL: _ALL_TYPES,
}

LLC_ENDINGS = ("LLC", "L.L.C.", "Limited Liability Company")
CORPORATION_ENDINGS = (
    "Inc.",
    "Incorporated",
    "Corp.",
    "Corporation",
    "Company",
    "Co.",
    "Limited",
    "Ltd.",
)

MIN_BASE_NAME_LENGTH = 3
MAX_BASE_NAME_LENGTH = 200
MAX_FULL_NAME_LENGTH = 245

_PROHIBITED_CHARS = re.compile(r"[<>{}\[\]\\/]")

# Venture funding generally requires a corporation
_VC_KEYWORDS = (
    "venture capital",
    "vc",
    "investors",
    "fundraising",
    "raise funding",
    "seed round",
    "series a",
    "startup",
    "stock options",
    "equity",
)

DEFAULT_REGISTERED_AGENT = RegisteredAgent(
    name="Northwest Registered Agent",
    address=Address(
        street1="8 The Green",
        street2="Suite A",
        city="Dover",
        state="DE",
        zip_code="19901",
        county="Kent",
    ),
    is_default=True,
)

DEFAULT_SHARE_STRUCTURE = ShareStructure(
    authorized_shares=10_000_000,
    par_value=Decimal("0.00001"),
    is_default=True,
)

DEFAULT_INCORPORATOR = Incorporator(
    name="Sema Kurt Caskey",
    address=Address(
        street1="75 Omega Drive",
        street2="Suite 270",
        city="Newark",
        state="DE",
        zip_code="19713",
        county="New Castle",
    ),
)


def entity_endings(entity_type: EntityType) -> Tuple[str, ...]:
    return LLC_ENDINGS if entity_type is EntityType.LLC else CORPORATION_ENDINGS


def entity_types_for(jurisdiction: Jurisdiction) -> Tuple[EntityType, ...]:
    return JURISDICTION_ENTITY_TYPES[jurisdiction]


def state_fee(jurisdiction: Jurisdiction) -> Decimal:
    return STATE_FILING_FEES[jurisdiction]


def compute_costs(
    jurisdiction: Jurisdiction,
    service_fee: Decimal,
    expedite_fee: Decimal,
    expedite: bool = False,
) -> CostBreakdown:
    """State filing fee + fixed service fee, plus the expedite fee when requested."""
    fee = state_fee(jurisdiction)
    expedite_amount = expedite_fee if expedite else Decimal("0")
    return CostBreakdown(
        state_fee=fee,
        service_fee=service_fee,
        expedite_fee=expedite_amount,
        total=fee + service_fee + expedite_amount,
    )


def recommend_entity_type(description: str) -> EntityType:
    text = description.lower()
    for keyword in _VC_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}\b", text):
            return EntityType.C_CORP
    return EntityType.LLC


def _ends_with_any(name: str, endings: Tuple[str, ...]) -> bool:
    lowered = name.lower()
    return any(lowered == e.lower() or lowered.endswith(" " + e.lower()) for e in endings)


def validate_name_format(
    base_name: str,
    entity_ending: str,
    entity_type: EntityType,
    jurisdiction: Jurisdiction,
) -> List[str]:
    """
    Local name rules checked before any availability lookup.

    Returns:
        List of human readable problems, empty when the name is acceptable
    """
    errors: List[str] = []
    name = (base_name or "").strip()

    if len(name) < MIN_BASE_NAME_LENGTH:
        errors.append(f"Company name must be at least {MIN_BASE_NAME_LENGTH} characters")
    if len(name) > MAX_BASE_NAME_LENGTH:
        errors.append(f"Company name must be at most {MAX_BASE_NAME_LENGTH} characters")
    if _PROHIBITED_CHARS.search(name):
        errors.append("Company name contains prohibited characters")
    if name and not name[0].isalnum():
        errors.append("Company name must start with a letter or number")
    if _ends_with_any(name, LLC_ENDINGS + CORPORATION_ENDINGS):
        errors.append("Enter the name without an entity ending; the ending is chosen separately")

    allowed = entity_endings(entity_type)
    if entity_ending not in allowed:
        errors.append(
            f"'{entity_ending}' is not a valid ending for a {entity_type.value} "
            f"(use one of: {', '.join(allowed)})"
        )
    if entity_type not in entity_types_for(jurisdiction):
        errors.append(f"{jurisdiction.value} does not offer {entity_type.value} formation")

    if len(f"{name} {entity_ending}") > MAX_FULL_NAME_LENGTH:
        errors.append(f"Full company name must be at most {MAX_FULL_NAME_LENGTH} characters")

    return errors
