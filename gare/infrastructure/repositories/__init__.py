from gare.infrastructure.repositories.base import PageRequest, RecordPage, RecordRepository, UnknownFilterError
from gare.infrastructure.repositories.clarification_request_repository import ClarificationRequestRepository
from gare.infrastructure.repositories.evaluation_repository import EvaluationRepository
from gare.infrastructure.repositories.job_run_repository import JobRunRepository
from gare.infrastructure.repositories.lot_repository import LotRepository
from gare.infrastructure.repositories.participant_repository import ParticipantRepository
from gare.infrastructure.repositories.price_elaboration_repository import PriceElaborationRepository
from gare.infrastructure.repositories.quote_repository import QuoteRepository
from gare.infrastructure.repositories.state_change_repository import StateChangeRepository
from gare.infrastructure.repositories.tender_repository import TenderRepository

__all__ = [
    "PageRequest",
    "RecordPage",
    "RecordRepository",
    "UnknownFilterError",
    "TenderRepository",
    "LotRepository",
    "EvaluationRepository",
    "PriceElaborationRepository",
    "QuoteRepository",
    "ParticipantRepository",
    "ClarificationRequestRepository",
    "StateChangeRepository",
    "JobRunRepository",
]
