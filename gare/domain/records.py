from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Union

from gare.domain.values import format_decimal, format_timestamp


class LotState(str, Enum):
    CREATED = "created"
    TECHNICAL_EVALUATION = "technical_evaluation"
    ECONOMIC_EVALUATION = "economic_evaluation"
    PRICE_ELABORATION = "price_elaboration"
    SUBMITTED = "submitted"
    UNDER_EXAMINATION = "under_examination"
    CLARIFICATION_PENDING = "clarification_pending"
    AWARDED = "awarded"
    LOST = "lost"
    REJECTED = "rejected"
    DISCARDED_BY_AUTHORITY = "discarded_by_authority"


TERMINAL_LOT_STATES: FrozenSet[LotState] = frozenset(
    {
        LotState.AWARDED,
        LotState.LOST,
        LotState.REJECTED,
        LotState.DISCARDED_BY_AUTHORITY,
    }
)


class TenderStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class QuoteState(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    VALID = "valid"
    SELECTED = "selected"
    EXPIRED = "expired"


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


@dataclass(frozen=True, kw_only=True)
class Record:
    id: int | None = None
    version: int = 0
    created_at: datetime | None = None
    created_by: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None
    deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None


@dataclass(frozen=True, kw_only=True)
class Tender(Record):
    code: str
    title: str
    status: TenderStatus = TenderStatus.OPEN
    submission_deadline: datetime | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None
    closure_reason: str | None = None
    closed_manually: bool = False


@dataclass(frozen=True, kw_only=True)
class Lot(Record):
    tender_id: int
    code: str
    description: str = ""
    state: LotState = LotState.CREATED
    operator_id: str | None = None
    examination_start_date: datetime | None = None
    rejection_reason: str | None = None
    base_price: Decimal | None = None
    quoted_price: Decimal | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_LOT_STATES


@dataclass(frozen=True)
class EvaluationPhase:
    evaluator_id: str | None = None
    approved: bool | None = None
    rejection_reason: str | None = None
    notes: str | None = None
    evaluated_at: datetime | None = None

    @property
    def is_approved(self) -> bool:
        return self.approved is True

    @property
    def is_set(self) -> bool:
        return self.approved is not None


@dataclass(frozen=True, kw_only=True)
class Evaluation(Record):
    lot_id: int
    technical: EvaluationPhase = field(default_factory=EvaluationPhase)
    economic: EvaluationPhase = field(default_factory=EvaluationPhase)


@dataclass(frozen=True, kw_only=True)
class PriceElaboration(Record):
    lot_id: int
    desired_price: Decimal | None = None
    actual_exit_price: Decimal | None = None
    adaptation_rationale: str | None = None

    @property
    def prices_diverge(self) -> bool:
        if self.desired_price is None or self.actual_exit_price is None:
            return False
        return self.desired_price != self.actual_exit_price


@dataclass(frozen=True, kw_only=True)
class Quote(Record):
    lot_id: int
    supplier_id: str
    request_date: datetime
    expiry_date: datetime
    description: str = ""
    state: QuoteState = QuoteState.PENDING
    received_date: datetime | None = None
    offered_amount: Decimal | None = None
    auto_renewal_days: int | None = None


@dataclass(frozen=True)
class KnownSubject:
    subject_id: str

    def __post_init__(self) -> None:
        if not str(self.subject_id or "").strip():
            raise ValueError("KnownSubject requires a subject id")


@dataclass(frozen=True)
class FreeTextCompany:
    name: str

    def __post_init__(self) -> None:
        if not str(self.name or "").strip():
            raise ValueError("FreeTextCompany requires a company name")


Bidder = Union[KnownSubject, FreeTextCompany]


@dataclass(frozen=True, kw_only=True)
class Participant(Record):
    lot_id: int
    bidder: Bidder
    economic_offer: Decimal | None = None
    is_awardee: bool = False
    is_rejected_by_authority: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.bidder, (KnownSubject, FreeTextCompany)):
            raise ValueError("Participant bidder must be KnownSubject or FreeTextCompany")
        if self.is_awardee and self.is_rejected_by_authority:
            raise ValueError("Participant cannot be awardee and rejected by authority")


@dataclass(frozen=True, kw_only=True)
class ClarificationRequest(Record):
    lot_id: int
    sequence_number: int
    request_text: str
    request_date: datetime
    response_text: str | None = None
    response_date: datetime | None = None
    responder_id: str | None = None
    closed: bool = False

    @property
    def has_response(self) -> bool:
        return bool((self.response_text or "").strip()) and self.response_date is not None


@dataclass(frozen=True)
class StateChangeRecord:
    entity: str
    entity_id: int
    lot_id: int | None
    from_state: str
    to_state: str
    occurred_at: datetime
    triggered_by: TriggeredBy
    actor: str | None = None
    reason: str | None = None
    id: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "lot_id": self.lot_id,
            "from": self.from_state,
            "to": self.to_state,
            "timestamp": format_timestamp(self.occurred_at),
            "triggered_by": self.triggered_by.value,
            "actor": self.actor,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class LotSnapshot:
    """Sub-entity facts the transition validator needs, gathered by the caller."""

    technical_approved: bool | None = None
    economic_approved: bool | None = None
    has_price_elaboration: bool = False
    price_rationale_satisfied: bool = False
    open_clarification_count: int = 0
    awardee_count: int = 0


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Decimal):
        return format_decimal(value)
    if isinstance(value, EvaluationPhase):
        return {item.name: _serialize(getattr(value, item.name)) for item in fields(value)}
    if isinstance(value, KnownSubject):
        return {"type": "known_subject", "subject_id": value.subject_id}
    if isinstance(value, FreeTextCompany):
        return {"type": "free_text", "name": value.name}
    return value


def record_to_dict(record: Record) -> Dict[str, Any]:
    return {item.name: _serialize(getattr(record, item.name)) for item in fields(record)}
