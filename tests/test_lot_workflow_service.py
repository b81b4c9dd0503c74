from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from gare.core import LotStateChanged, TenderStatusChanged
from gare.domain.records import LotState, TenderStatus, TriggeredBy
from gare.domain.results import ErrorKind
from gare.errors import ConcurrencyConflictError
from gare.identity import DEADLINE_JOB_ACTOR
from gare.observability import metrics_snapshot
from tests.helpers.workflow_case import WorkflowTestCase


class LotStateChangeTest(WorkflowTestCase):
    sandbox_prefix = "lot_state"

    def setUp(self) -> None:
        super().setUp()
        self.tender = self.create_tender()
        self.lot = self.create_lot(self.tender.id)
        self.lots = self.services.lots

    def test_technical_approval_unlocks_economic_phase(self) -> None:
        self.assert_ok(self.lots.change_state(self.db, self.lot.id, LotState.TECHNICAL_EVALUATION, actor="op"))
        self.assert_ok(self.lots.record_technical_evaluation(self.db, self.lot.id, "tecnico.1", True))

        record = self.assert_ok(self.lots.change_state(self.db, self.lot.id, "economic_evaluation", actor="op"))

        self.assertEqual(record.from_state, "technical_evaluation")
        self.assertEqual(record.to_state, "economic_evaluation")
        self.assertEqual(record.triggered_by, TriggeredBy.MANUAL)
        self.assertEqual(record.actor, "op")
        self.assertEqual(record.occurred_at, self.now)
        self.assertEqual(self.reload_lot(self.lot.id).state, LotState.ECONOMIC_EVALUATION)

    def test_economic_evaluation_before_technical_approval_fails(self) -> None:
        self.assert_ok(self.lots.change_state(self.db, self.lot.id, LotState.TECHNICAL_EVALUATION, actor="op"))

        result = self.lots.record_economic_evaluation(self.db, self.lot.id, "economico.1", True, actor="economico.1")

        self.assertEqual(result.error.kind, ErrorKind.EVALUATION_NOT_READY)
        self.assertIsNone(self.lots.evaluations.get_for_lot(self.db, self.lot.id))

    def test_rejected_transition_has_no_side_effects(self) -> None:
        result = self.lots.change_state(self.db, self.lot.id, LotState.SUBMITTED, actor="op")

        self.assertEqual(result.error.kind, ErrorKind.INVALID_TRANSITION)
        stored = self.reload_lot(self.lot.id)
        self.assertEqual(stored.state, LotState.CREATED)
        self.assertEqual(stored.version, self.lot.version)
        self.assertEqual(self.assert_ok(self.lots.lot_history(self.db, self.lot.id)), [])
        self.assertEqual(self.events, [])

    def test_unknown_state_name_is_a_validation_failure(self) -> None:
        result = self.lots.change_state(self.db, self.lot.id, "archived", actor="op")
        self.assertEqual(result.error.kind, ErrorKind.VALIDATION_FAILED)
        self.assertEqual(result.error.details["field"], "state")

    def test_missing_lot(self) -> None:
        missing = self.lots.change_state(self.db, 999, LotState.TECHNICAL_EVALUATION)
        self.assertEqual(missing.error.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(self.lots.get_lot(self.db, 999).error.message_key, "lot_not_found")

    def test_reject_requires_reason_and_stores_it(self) -> None:
        self.assertEqual(self.lots.reject(self.db, self.lot.id, "  ", actor="op").error.kind, ErrorKind.EMPTY_REASON)

        record = self.assert_ok(self.lots.reject(self.db, self.lot.id, "Requisiti non posseduti", actor="op"))

        self.assertEqual(record.to_state, "rejected")
        self.assertEqual(record.reason, "Requisiti non posseduti")
        self.assertEqual(self.reload_lot(self.lot.id).rejection_reason, "Requisiti non posseduti")

    def test_history_and_events_follow_every_change(self) -> None:
        self.advance_lot_to(self.lot.id, LotState.SUBMITTED)

        history = self.assert_ok(self.lots.lot_history(self.db, self.lot.id))
        self.assertEqual(
            [record.to_state for record in reversed(history)],
            ["technical_evaluation", "economic_evaluation", "price_elaboration", "submitted"],
        )
        lot_events = [event for event in self.events if isinstance(event, LotStateChanged)]
        self.assertEqual(len(lot_events), 4)
        self.assertEqual(lot_events[-1].to_state, "submitted")
        self.assertEqual(lot_events[-1].tender_id, self.tender.id)
        self.assertEqual(metrics_snapshot()["state_changes_total"]["lot:submitted:manual"], 1)

    def test_submission_blocked_without_rationale(self) -> None:
        self.advance_lot_to(self.lot.id, LotState.PRICE_ELABORATION)

        missing = self.lots.change_state(self.db, self.lot.id, LotState.SUBMITTED, actor="op")
        self.assertEqual(missing.error.message_key, "price_elaboration_missing")

        result = self.lots.record_price_elaboration(self.db, self.lot.id, Decimal("100"), Decimal("90"))
        self.assertEqual(result.error.kind, ErrorKind.RATIONALE_REQUIRED)
        self.assertIsNone(self.lots.price_elaborations.get_for_lot(self.db, self.lot.id))

        self.assert_ok(
            self.lots.record_price_elaboration(
                self.db,
                self.lot.id,
                Decimal("100"),
                Decimal("90"),
                "Ribasso per allineamento ai prezzi di mercato",
            )
        )
        self.assert_ok(self.lots.change_state(self.db, self.lot.id, LotState.SUBMITTED, actor="op"))

    def test_lot_detail_lists_allowed_transitions(self) -> None:
        detail = self.assert_ok(self.lots.lot_detail(self.db, self.lot.id))
        self.assertEqual(detail["lot"]["state"], "created")
        self.assertEqual(detail["allowed_transitions"], ["technical_evaluation", "rejected"])
        self.assertIsNone(detail["evaluation"])
        self.assertEqual(detail["quotes"], [])


class LotAttributesTest(WorkflowTestCase):
    sandbox_prefix = "lot_attributes"

    def setUp(self) -> None:
        super().setUp()
        self.tender = self.create_tender()
        self.lot = self.create_lot(self.tender.id)
        self.lots = self.services.lots

    def test_assign_operator_is_idempotent(self) -> None:
        first = self.assert_ok(self.lots.assign_operator(self.db, self.lot.id, "operatore.7", actor="capo"))
        second = self.assert_ok(self.lots.assign_operator(self.db, self.lot.id, "operatore.7", actor="capo"))
        self.assertEqual(first.operator_id, "operatore.7")
        self.assertEqual(first.version, second.version)
        self.assertEqual(self.lots.assign_operator(self.db, 404, "x").error.kind, ErrorKind.NOT_FOUND)
        self.assertEqual(self.lots.assign_operator(self.db, self.lot.id, " ").error.kind, ErrorKind.VALIDATION_FAILED)

    def test_examination_start_date_does_not_transition(self) -> None:
        early = self.lots.set_examination_start_date(self.db, self.lot.id, self.now)
        self.assertEqual(early.error.message_key, "examination_start_requires_submitted")

        self.advance_lot_to(self.lot.id, LotState.SUBMITTED)
        start = self.now - timedelta(days=1)
        lot = self.assert_ok(self.lots.set_examination_start_date(self.db, self.lot.id, start, actor="op"))

        self.assertEqual(lot.examination_start_date, start)
        self.assertEqual(lot.state, LotState.SUBMITTED)

    def test_technical_revocation_clears_economic_phase(self) -> None:
        self.advance_lot_to(self.lot.id, LotState.ECONOMIC_EVALUATION)
        self.assert_ok(self.lots.record_economic_evaluation(self.db, self.lot.id, "economico.1", True))

        evaluation = self.assert_ok(
            self.lots.record_technical_evaluation(
                self.db,
                self.lot.id,
                "tecnico.2",
                False,
                "Certificazioni scadute",
            )
        )

        self.assertFalse(evaluation.technical.approved)
        self.assertEqual(evaluation.technical.rejection_reason, "Certificazioni scadute")
        self.assertIsNone(evaluation.economic.approved)
        self.assertIsNone(evaluation.economic.evaluator_id)

    def test_negative_evaluation_requires_reason(self) -> None:
        result = self.lots.record_technical_evaluation(self.db, self.lot.id, "tecnico.1", False)
        self.assertEqual(result.error.kind, ErrorKind.EMPTY_REASON)

    def test_evaluation_upsert_keeps_other_phase(self) -> None:
        self.lots.record_technical_evaluation(self.db, self.lot.id, "tecnico.1", True, notes="ok")
        self.lots.record_economic_evaluation(self.db, self.lot.id, "economico.1", True)
        evaluation = self.assert_ok(self.lots.record_economic_evaluation(self.db, self.lot.id, "economico.2", None))

        self.assertTrue(evaluation.technical.approved)
        self.assertEqual(evaluation.technical.notes, "ok")
        self.assertEqual(evaluation.economic.evaluator_id, "economico.2")
        self.assertIsNone(evaluation.economic.approved)

    def test_terminal_lot_refuses_evaluation_and_prices(self) -> None:
        self.assert_ok(self.lots.reject(self.db, self.lot.id, "Ritirato"))

        evaluation = self.lots.record_technical_evaluation(self.db, self.lot.id, "tecnico.1", True)
        price = self.lots.record_price_elaboration(self.db, self.lot.id, Decimal("1"), Decimal("1"))

        self.assertEqual(evaluation.error.details["reason"], "terminal_state")
        self.assertEqual(price.error.kind, ErrorKind.INVALID_TRANSITION)


class ParticipantsTest(WorkflowTestCase):
    sandbox_prefix = "lot_participants"

    def setUp(self) -> None:
        super().setUp()
        self.tender = self.create_tender()
        self.lot = self.create_lot(self.tender.id)
        self.lots = self.services.lots

    def _awardees(self):
        return [item.id for item in self.lots.participants.list_for_lot(self.db, self.lot.id) if item.is_awardee]

    def test_switching_awardee_keeps_exactly_one(self) -> None:
        first = self.assert_ok(self.lots.add_participant(self.db, self.lot.id, subject_id="S-1"))
        second = self.assert_ok(self.lots.add_participant(self.db, self.lot.id, company_name="Bianchi Spa"))

        self.assert_ok(self.lots.set_awardee(self.db, self.lot.id, first.id))
        self.assertEqual(self._awardees(), [first.id])

        awarded = self.assert_ok(self.lots.set_awardee(self.db, self.lot.id, second.id))
        self.assertTrue(awarded.is_awardee)
        self.assertEqual(self._awardees(), [second.id])

    def test_rejected_participant_cannot_be_awardee(self) -> None:
        participant = self.assert_ok(
            self.lots.add_participant(self.db, self.lot.id, subject_id="S-2", is_rejected_by_authority=True)
        )
        result = self.lots.set_awardee(self.db, self.lot.id, participant.id)
        self.assertEqual(result.error.kind, ErrorKind.INVALID_PARTICIPANT_STATE)
        self.assertEqual(self._awardees(), [])

    def test_second_awardee_on_insert_is_refused(self) -> None:
        self.assert_ok(self.lots.add_participant(self.db, self.lot.id, subject_id="S-1", is_awardee=True))
        result = self.lots.add_participant(self.db, self.lot.id, subject_id="S-2", is_awardee=True)
        self.assertEqual(result.error.message_key, "awardee_already_set")

    def test_bidder_must_be_exactly_one_kind(self) -> None:
        result = self.lots.add_participant(self.db, self.lot.id, subject_id="S-1", company_name="Rossi Srl")
        self.assertEqual(result.error.message_key, "bidder_ambiguous")
        self.assertEqual(self.lots.add_participant(self.db, self.lot.id).error.message_key, "bidder_required")

    def test_awardee_cannot_be_marked_rejected(self) -> None:
        participant = self.assert_ok(self.lots.add_participant(self.db, self.lot.id, subject_id="S-1", is_awardee=True))
        result = self.lots.mark_participant_rejected(self.db, participant.id)
        self.assertEqual(result.error.message_key, "participant_is_awardee")

        other = self.assert_ok(self.lots.add_participant(self.db, self.lot.id, subject_id="S-3"))
        rejected = self.assert_ok(self.lots.mark_participant_rejected(self.db, other.id))
        self.assertTrue(rejected.is_rejected_by_authority)

    def test_award_requires_single_awardee_and_closes_tender(self) -> None:
        self.advance_lot_to(self.lot.id, LotState.UNDER_EXAMINATION)
        missing = self.lots.change_state(self.db, self.lot.id, LotState.AWARDED, actor="op")
        self.assertEqual(missing.error.kind, ErrorKind.INVALID_PARTICIPANT_STATE)

        participant = self.assert_ok(self.lots.add_participant(self.db, self.lot.id, subject_id="S-1"))
        self.assert_ok(self.lots.set_awardee(self.db, self.lot.id, participant.id))
        self.assert_ok(self.lots.change_state(self.db, self.lot.id, LotState.AWARDED, actor="op"))

        tender = self.services.tenders.tenders.get(self.db, self.tender.id)
        self.assertEqual(tender.status, TenderStatus.CLOSED)
        self.assertEqual(tender.closure_reason, "all_lots_terminal")
        self.assertFalse(tender.closed_manually)
        tender_events = [event for event in self.events if isinstance(event, TenderStatusChanged)]
        self.assertEqual([event.triggered_by for event in tender_events], ["automatic"])


class ClarificationGateTest(WorkflowTestCase):
    sandbox_prefix = "lot_clarifications"

    def setUp(self) -> None:
        super().setUp()
        self.tender = self.create_tender()
        self.lot = self.create_lot(self.tender.id)
        self.lots = self.services.lots
        self.advance_lot_to(self.lot.id, LotState.UNDER_EXAMINATION)

    def _open(self, text: str = "Si chiede di integrare la scheda tecnica del prodotto"):
        return self.assert_ok(self.lots.open_clarification_request(self.db, self.lot.id, text, actor="ente"))

    def test_opening_request_moves_lot_to_clarification_pending(self) -> None:
        request = self._open()

        self.assertEqual(request.sequence_number, 1)
        self.assertFalse(request.closed)
        lot = self.reload_lot(self.lot.id)
        self.assertEqual(lot.state, LotState.CLARIFICATION_PENDING)
        history = self.assert_ok(self.lots.lot_history(self.db, self.lot.id))
        self.assertEqual(history[0].triggered_by, TriggeredBy.AUTOMATIC)
        self.assertEqual(history[0].reason, "clarification_request_opened")

    def test_gate_waits_for_every_request(self) -> None:
        first = self._open()
        second = self._open("Si chiede conferma dei tempi di consegna indicati")
        self.assertEqual(second.sequence_number, 2)

        self.advance_clock(hours=2)
        closure = self.assert_ok(
            self.lots.close_clarification_request(
                self.db,
                first.id,
                "Scheda tecnica allegata alla presente",
                self.now,
                "fornitore.1",
            )
        )
        self.assertFalse(closure.gate_satisfied)
        self.assertEqual(closure.open_requests, 1)
        self.assertIsNone(closure.state_change)
        self.assertEqual(self.reload_lot(self.lot.id).state, LotState.CLARIFICATION_PENDING)

        manual = self.lots.change_state(self.db, self.lot.id, LotState.UNDER_EXAMINATION, actor="op")
        self.assertEqual(manual.error.details["open_requests"], 1)

        closure = self.assert_ok(
            self.lots.close_clarification_request(
                self.db,
                second.id,
                "Consegna confermata entro trenta giorni",
                self.now,
            )
        )
        self.assertTrue(closure.gate_satisfied)
        self.assertEqual(closure.state_change.to_state, "under_examination")
        self.assertEqual(closure.state_change.triggered_by, TriggeredBy.AUTOMATIC)
        self.assertEqual(self.reload_lot(self.lot.id).state, LotState.UNDER_EXAMINATION)

    def test_close_requires_response_and_only_once(self) -> None:
        request = self._open()

        missing = self.lots.close_clarification_request(self.db, request.id)
        self.assertEqual(missing.error.kind, ErrorKind.RESPONSE_REQUIRED)

        self.assert_ok(
            self.lots.respond_to_clarification_request(
                self.db,
                request.id,
                "Documentazione integrata come richiesto",
            )
        )
        self.assert_ok(self.lots.close_clarification_request(self.db, request.id))

        again = self.lots.close_clarification_request(self.db, request.id, "Risposta successiva alla chiusura")
        self.assertEqual(again.error.kind, ErrorKind.ALREADY_CLOSED)

    def test_response_validation(self) -> None:
        request = self._open()

        short = self.lots.respond_to_clarification_request(self.db, request.id, "ok")
        self.assertEqual(short.error.message_key, "text_too_short")

        future = self.lots.respond_to_clarification_request(
            self.db,
            request.id,
            "Risposta completa e sufficientemente lunga",
            self.now + timedelta(days=1),
        )
        self.assertEqual(future.error.message_key, "date_in_future")

        early = self.lots.respond_to_clarification_request(
            self.db,
            request.id,
            "Risposta completa e sufficientemente lunga",
            self.now - timedelta(days=1),
        )
        self.assertEqual(early.error.message_key, "response_before_request")

    def test_naive_dates_are_read_as_utc(self) -> None:
        naive_now = self.now.replace(tzinfo=None)
        request = self.assert_ok(
            self.lots.open_clarification_request(
                self.db,
                self.lot.id,
                "Si chiede il dettaglio dei costi di trasporto",
                naive_now - timedelta(hours=1),
            )
        )
        self.assertEqual(request.request_date, self.now - timedelta(hours=1))

        future = self.lots.open_clarification_request(
            self.db,
            self.lot.id,
            "Richiesta con data successiva a oggi",
            naive_now + timedelta(days=1),
        )
        self.assertEqual(future.error.message_key, "date_in_future")

        answered = self.assert_ok(
            self.lots.respond_to_clarification_request(
                self.db,
                request.id,
                "Costi di trasporto inclusi nel prezzo",
                naive_now,
            )
        )
        self.assertEqual(answered.response_date, self.now)

    def test_request_only_during_examination(self) -> None:
        other = self.create_lot(self.tender.id, code="L2")
        result = self.lots.open_clarification_request(self.db, other.id, "Richiesta fuori fase di esame")
        self.assertEqual(result.error.message_key, "clarification_requires_examination")


class ConcurrencyTest(WorkflowTestCase):
    sandbox_prefix = "lot_concurrency"

    def test_stale_write_surfaces_as_conflict(self) -> None:
        tender = self.create_tender()
        lot = self.create_lot(tender.id)
        lots = self.services.lots
        self.assert_ok(lots.assign_operator(self.db, lot.id, "operatore.1"))

        with patch.object(lots.lots, "get", return_value=lot):
            result = lots.change_state(self.db, lot.id, LotState.TECHNICAL_EVALUATION, actor="op")

        self.assertEqual(result.error.kind, ErrorKind.CONCURRENCY_CONFLICT)
        self.assertTrue(result.error.details["retryable"])
        stored = self.reload_lot(lot.id)
        self.assertEqual(stored.state, LotState.CREATED)
        self.assertEqual(self.assert_ok(lots.lot_history(self.db, lot.id)), [])

    def test_overlapping_awardee_changes_leave_one_awardee(self) -> None:
        tender = self.create_tender()
        lot = self.create_lot(tender.id)
        lots = self.services.lots
        first = self.assert_ok(lots.add_participant(self.db, lot.id, subject_id="S-1"))
        second = self.assert_ok(lots.add_participant(self.db, lot.id, subject_id="S-2"))
        other_db = self.open_connection()
        original = lots.participants.list_for_lot
        calls = []
        competing = []

        def interleaved(db, lot_id):
            participants = original(db, lot_id)
            calls.append(db)
            if len(calls) == 1:
                competing.append(lots.set_awardee(other_db, lot_id, second.id, actor="altro"))
            return participants

        with patch.object(lots.participants, "list_for_lot", side_effect=interleaved):
            result = lots.set_awardee(self.db, lot.id, first.id, actor="op")

        self.assertTrue(competing[0].is_ok)
        self.assertEqual(result.error.kind, ErrorKind.CONCURRENCY_CONFLICT)
        awardees = [item.id for item in lots.participants.list_for_lot(self.db, lot.id) if item.is_awardee]
        self.assertEqual(awardees, [second.id])

    def test_request_opened_during_gate_check_blocks_the_transition(self) -> None:
        tender = self.create_tender()
        lot = self.advance_lot_to(self.create_lot(tender.id).id, LotState.UNDER_EXAMINATION)
        lots = self.services.lots
        lots.lots.upsert(self.db, replace(lot, state=LotState.CLARIFICATION_PENDING), "tester")
        self.db.commit()
        other_db = self.open_connection()
        original = lots.snapshot
        competing = []

        def interleaved(db, lot_id):
            snapshot = original(db, lot_id)
            if not competing:
                competing.append(
                    lots.open_clarification_request(
                        other_db,
                        lot_id,
                        "Richiesta pervenuta durante la verifica",
                        actor="ente",
                    )
                )
            return snapshot

        with patch.object(lots, "snapshot", side_effect=interleaved):
            result = lots.change_state(
                self.db,
                lot.id,
                LotState.UNDER_EXAMINATION,
                actor=DEADLINE_JOB_ACTOR,
                reason="clarification_gate_satisfied",
                triggered_by=TriggeredBy.AUTOMATIC,
            )

        self.assertTrue(competing[0].is_ok)
        self.assertEqual(result.error.kind, ErrorKind.CONCURRENCY_CONFLICT)
        self.assertEqual(self.reload_lot(lot.id).state, LotState.CLARIFICATION_PENDING)
        self.assertEqual(lots.clarifications.count_open(self.db, lot.id), 1)

    def test_clarification_writes_claim_the_lot_version(self) -> None:
        tender = self.create_tender()
        lot = self.advance_lot_to(self.create_lot(tender.id).id, LotState.UNDER_EXAMINATION)
        lots = self.services.lots
        request = self.assert_ok(
            lots.open_clarification_request(self.db, lot.id, "Si chiede copia della certificazione", actor="ente")
        )
        pending = self.reload_lot(lot.id)

        self.assert_ok(lots.respond_to_clarification_request(self.db, request.id, "Certificazione allegata"))
        answered = self.reload_lot(lot.id)
        self.assertEqual(answered.version, pending.version + 1)

        self.assert_ok(
            lots.open_clarification_request(self.db, lot.id, "Si chiede anche la visura camerale", actor="ente")
        )
        self.assertEqual(self.reload_lot(lot.id).version, answered.version + 1)

    def test_conflict_error_carries_entity(self) -> None:
        error = ConcurrencyConflictError("lot", 4, 2)
        self.assertEqual(error.http_status, 409)
        self.assertEqual(error.payload["retryable"], True)
