from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase"""
    components = string.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelCaseModel(BaseModel):
    """Base model with camelCase alias configuration"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,  # Allow both snake_case and camelCase
    )


class SessionStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETE = "payment_complete"
    FILING_IN_PROGRESS = "filing_in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.ABANDONED, SessionStatus.EXPIRED, SessionStatus.FAILED}
)


class FormationStep(str, Enum):
    CREATED = "created"
    BUSINESS_DESCRIBED = "business_described"
    STATE_SELECTED = "state_selected"
    TYPE_SELECTED = "type_selected"
    NAME_SET = "name_set"
    NAME_CHECKED = "name_checked"
    COMPANY_ADDRESS_SET = "company_address_set"
    AGENT_SET = "agent_set"
    SHARES_SET = "shares_set"
    SHAREHOLDERS_ADDED = "shareholders_added"
    AUTHORIZED_PARTY_SET = "authorized_party_set"
    CERTIFICATE_GENERATED = "certificate_generated"
    CERTIFICATE_APPROVED = "certificate_approved"
    COMPLETED = "completed"


class EntityType(str, Enum):
    LLC = "LLC"
    C_CORP = "C-Corp"
    S_CORP = "S-Corp"

    @property
    def is_corporation(self) -> bool:
        return self is not EntityType.LLC


class Jurisdiction(str, Enum):
    DE = "DE"
    WY = "WY"
    CA = "CA"
    TX = "TX"
    NY = "NY"
    FL = "FL"


class ShareholderRole(str, Enum):
    MEMBER = "member"
    MANAGING_MEMBER = "managing_member"
    SHAREHOLDER = "shareholder"
    DIRECTOR = "director"
    OFFICER = "officer"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "card"
    ACH = "ach"


class FilingStatus(str, Enum):
    SUBMITTED = "submitted"
    PENDING_REVIEW = "pending_review"
    IN_REVIEW = "in_review"
    FILED = "filed"
    REJECTED = "rejected"
    ERROR = "error"


class Address(BaseModel):
    street1: str = Field(min_length=1, max_length=200)
    street2: Optional[str] = None
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(pattern=r"^[A-Z]{2}$")
    zip_code: str = Field(pattern=r"^\d{5}(-\d{4})?$")
    county: Optional[str] = None
    country: str = "US"

    @field_validator("state", mode="before")
    @classmethod
    def upper_state(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


class CompanyDetails(BaseModel):
    business_description: Optional[str] = None
    recommended_entity_type: Optional[EntityType] = None
    jurisdiction: Optional[Jurisdiction] = None
    entity_type: Optional[EntityType] = None
    base_name: Optional[str] = None
    entity_ending: Optional[str] = None
    purpose: str = "Any lawful purpose"
    effective_date: Optional[date] = None
    mailing_address: Optional[Address] = None

    @property
    def full_name(self) -> Optional[str]:
        if not self.base_name or not self.entity_ending:
            return None
        return f"{self.base_name} {self.entity_ending}"


class RegisteredAgent(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Address
    is_default: bool = False


class ShareStructure(BaseModel):
    authorized_shares: int = Field(ge=1, le=1_000_000_000)
    par_value: Decimal = Field(ge=0, le=1000)
    is_default: bool = False

    @property
    def total_par_value(self) -> Decimal:
        return self.par_value * self.authorized_shares


class Shareholder(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    ownership_percentage: float = Field(ge=0.01, le=100)
    address: Address
    role: ShareholderRole = ShareholderRole.MEMBER
    tax_id: Optional[SecretStr] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class AuthorizedParty(BaseModel):
    name: str = Field(min_length=1)
    title: str = Field(min_length=1)
    email: Optional[str] = None


class Incorporator(BaseModel):
    name: str
    address: Address


class NameCheckResult(BaseModel):
    name: str
    jurisdiction: Jurisdiction
    available: bool
    checked_at: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    suggestions: List[str] = Field(default_factory=list)
    response_time_ms: Optional[int] = None


class CertificateMetadata(BaseModel):
    company_name: str
    generated_at: datetime
    file_size: int = Field(ge=0)
    file_hash: str


class CertificateSessionData(BaseModel):
    certificate_id: str
    download_url: str
    storage_uri: str
    expires_at: datetime
    approved_at: Optional[datetime] = None
    metadata: CertificateMetadata

    def minutes_remaining(self, now: Optional[datetime] = None) -> int:
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return max(0, int(remaining // 60))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


class GeneratedDocument(BaseModel):
    document_id: str
    document_type: str
    download_url: str


class CostBreakdown(BaseModel):
    state_fee: Decimal
    service_fee: Decimal
    expedite_fee: Decimal = Decimal("0")
    total: Decimal


class PaymentRecord(BaseModel):
    transaction_id: str
    amount: Decimal
    method: PaymentMethod
    instrument: Optional[SecretStr] = None
    breakdown: CostBreakdown
    processed_at: datetime = Field(default_factory=utcnow)


class SubmissionResult(BaseModel):
    filing_id: str
    status: FilingStatus
    idempotency_key: str
    confirmation_number: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)
    filed_at: Optional[datetime] = None
    certificate_url: Optional[str] = None
    message: Optional[str] = None


class FormationSession(BaseModel):
    """Aggregate root for one formation attempt"""

    session_id: str
    owner_id: Optional[str] = None
    status: SessionStatus = SessionStatus.CREATED
    current_step: FormationStep = FormationStep.CREATED

    company_details: Optional[CompanyDetails] = None
    registered_agent: Optional[RegisteredAgent] = None
    share_structure: Optional[ShareStructure] = None
    incorporator: Optional[Incorporator] = None
    shareholders: List[Shareholder] = Field(default_factory=list)
    authorized_party: Optional[AuthorizedParty] = None

    name_check_result: Optional[NameCheckResult] = None
    certificate_data: Optional[CertificateSessionData] = None
    documents: List[GeneratedDocument] = Field(default_factory=list)
    submission_result: Optional[SubmissionResult] = None
    payment_status: Optional[PaymentStatus] = None
    payment: Optional[PaymentRecord] = None
    expedite: bool = False
    filing_idempotency_key: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @property
    def entity_type(self) -> Optional[EntityType]:
        return self.company_details.entity_type if self.company_details else None

    @property
    def is_corporation(self) -> bool:
        return self.entity_type is not None and self.entity_type.is_corporation

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def total_ownership(self) -> float:
        return round(sum(s.ownership_percentage for s in self.shareholders), 4)


def next_timestamp(previous: Optional[datetime] = None) -> datetime:
    """Current UTC time, forced strictly after ``previous``."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now
