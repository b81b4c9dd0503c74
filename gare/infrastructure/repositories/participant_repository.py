from __future__ import annotations

from typing import Any, Dict, List, Mapping

from gare.domain.records import FreeTextCompany, KnownSubject, Participant
from gare.domain.values import parse_decimal
from gare.infrastructure.repositories.base import RecordRepository, audit_fields


class ParticipantRepository(RecordRepository[Participant]):
    table = "participants"
    entity = "participant"
    filterable = ("id", "lot_id", "subject_id", "is_awardee", "is_rejected_by_authority")

    def _from_row(self, row: Mapping[str, Any]) -> Participant:
        if row["subject_id"]:
            bidder = KnownSubject(row["subject_id"])
        else:
            bidder = FreeTextCompany(row["company_name"])
        return Participant(
            **audit_fields(row),
            lot_id=int(row["lot_id"]),
            bidder=bidder,
            economic_offer=parse_decimal(row["economic_offer"]),
            is_awardee=bool(row["is_awardee"]),
            is_rejected_by_authority=bool(row["is_rejected_by_authority"]),
        )

    def _to_values(self, record: Participant) -> Dict[str, Any]:
        known = isinstance(record.bidder, KnownSubject)
        return {
            "lot_id": record.lot_id,
            "subject_id": record.bidder.subject_id if known else None,
            "company_name": None if known else record.bidder.name,
            "economic_offer": record.economic_offer,
            "is_awardee": bool(record.is_awardee),
            "is_rejected_by_authority": bool(record.is_rejected_by_authority),
        }

    def list_for_lot(self, db, lot_id: int) -> List[Participant]:
        return self.list_all(db, {"lot_id": lot_id})
