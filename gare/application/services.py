from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping

from gare.application.lot_workflow_service import DEFAULT_MIN_TEXT_LENGTH, LotWorkflowService
from gare.application.quote_service import QuoteService
from gare.application.tender_service import TenderService
from gare.config import int_setting
from gare.core import EventBus, get_event_bus
from gare.domain.values import utc_now
from gare.infrastructure.repositories import (
    ClarificationRequestRepository,
    LotRepository,
    ParticipantRepository,
    QuoteRepository,
    StateChangeRepository,
    TenderRepository,
)


@dataclass(frozen=True)
class WorkflowServices:
    tenders: TenderService
    lots: LotWorkflowService
    quotes: QuoteService


def build_services(
    config: Mapping[str, object],
    *,
    event_bus: EventBus | None = None,
    clock: Callable[[], datetime] | None = None,
) -> WorkflowServices:
    """Wire the three services over one shared set of repositories."""
    bus = event_bus or get_event_bus()
    now = clock or utc_now
    lots = LotRepository()
    quotes = QuoteRepository()
    participants = ParticipantRepository()
    clarifications = ClarificationRequestRepository()
    history = StateChangeRepository()

    tender_service = TenderService(
        tenders=TenderRepository(),
        lots=lots,
        quotes=quotes,
        participants=participants,
        clarifications=clarifications,
        history=history,
        event_bus=bus,
        clock=now,
    )
    lot_service = LotWorkflowService(
        lots=lots,
        participants=participants,
        clarifications=clarifications,
        history=history,
        tender_service=tender_service,
        event_bus=bus,
        clock=now,
        min_text_length=int_setting(config, "CLARIFICATION_MIN_TEXT_LENGTH", DEFAULT_MIN_TEXT_LENGTH, 1, 1000),
    )
    quote_service = QuoteService(
        quotes=quotes,
        lots=lots,
        history=history,
        event_bus=bus,
        clock=now,
        min_renewal_days=int_setting(config, "QUOTE_MIN_AUTO_RENEWAL_DAYS", 1, 1, 3650),
    )
    return WorkflowServices(tenders=tender_service, lots=lot_service, quotes=quote_service)
