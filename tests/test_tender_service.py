from datetime import timedelta

from gare.core import TenderStatusChanged
from gare.domain.records import LotState, TenderStatus
from gare.domain.results import ErrorKind
from gare.infrastructure.repositories import PageRequest
from tests.helpers.workflow_case import WorkflowTestCase


class TenderServiceTest(WorkflowTestCase):
    sandbox_prefix = "tender_service"

    def setUp(self) -> None:
        super().setUp()
        self.tenders = self.services.tenders

    def test_create_requires_unique_code(self) -> None:
        tender = self.create_tender("G-1")
        self.assertEqual(tender.status, TenderStatus.OPEN)
        self.assertEqual(tender.created_by, "ufficio.gare")

        duplicate = self.tenders.create_tender(self.db, "G-1", "Altra gara")
        self.assertEqual(duplicate.error.message_key, "tender_code_taken")
        self.assertEqual(self.tenders.create_tender(self.db, "G-2", " ").error.details["field"], "title")

    def test_lot_codes_are_unique_per_tender(self) -> None:
        first = self.create_tender("G-1")
        second = self.create_tender("G-2")
        self.create_lot(first.id, "L1")
        self.create_lot(second.id, "L1")

        duplicate = self.tenders.create_lot(self.db, first.id, "L1")
        self.assertEqual(duplicate.error.message_key, "lot_code_taken")
        self.assertEqual(
            [lot.code for lot in self.assert_ok(self.tenders.list_lots(self.db, first.id))],
            ["L1"],
        )

    def test_list_tenders_filters_by_status(self) -> None:
        for index in range(3):
            self.create_tender(f"G-{index}")
        closing = self.create_tender("G-X")
        self.assert_ok(self.tenders.close_tender(self.db, closing.id, "Annullata dalla stazione appaltante"))

        page = self.tenders.list_tenders(self.db, {"status": "open"}, PageRequest(limit=2))
        self.assertEqual(len(page.items), 2)
        self.assertTrue(page.has_more)
        closed = self.tenders.list_tenders(self.db, {"status": "closed"})
        self.assertEqual([item.code for item in closed.items], ["G-X"])

    def test_manual_close_and_reopen(self) -> None:
        tender = self.create_tender()
        self.create_lot(tender.id)

        missing_reason = self.tenders.close_tender(self.db, tender.id, "")
        self.assertEqual(missing_reason.error.kind, ErrorKind.EMPTY_REASON)

        record = self.assert_ok(self.tenders.close_tender(self.db, tender.id, "Gara revocata", actor="dirigente"))
        self.assertEqual((record.from_state, record.to_state), ("open", "closed"))
        stored = self.tenders.tenders.get(self.db, tender.id)
        self.assertTrue(stored.closed_manually)
        self.assertEqual(stored.closed_by, "dirigente")

        twice = self.tenders.close_tender(self.db, tender.id, "Di nuovo")
        self.assertEqual(twice.error.message_key, "tender_invalid_transition")

        closed_lot = self.tenders.create_lot(self.db, tender.id, "L9")
        self.assertEqual(closed_lot.error.message_key, "tender_closed")

        self.assert_ok(self.tenders.reopen_tender(self.db, tender.id))
        reopened = self.tenders.tenders.get(self.db, tender.id)
        self.assertEqual(reopened.status, TenderStatus.OPEN)
        self.assertIsNone(reopened.closure_reason)
        statuses = [event.to_status for event in self.events if isinstance(event, TenderStatusChanged)]
        self.assertEqual(statuses, ["closed", "open"])

    def test_auto_closed_tender_is_not_reopenable(self) -> None:
        tender = self.create_tender()
        lot = self.create_lot(tender.id)
        self.assert_ok(self.services.lots.reject(self.db, lot.id, "Offerta non presentata"))

        stored = self.tenders.tenders.get(self.db, tender.id)
        self.assertEqual(stored.status, TenderStatus.CLOSED)
        self.assertEqual(stored.closure_reason, "all_lots_terminal")

        result = self.tenders.reopen_tender(self.db, tender.id)
        self.assertEqual(result.error.message_key, "tender_not_reopenable")

    def test_tender_stays_open_while_a_lot_is_running(self) -> None:
        tender = self.create_tender()
        first = self.create_lot(tender.id, "L1")
        self.create_lot(tender.id, "L2")
        self.assert_ok(self.services.lots.reject(self.db, first.id, "Nessun requisito"))

        self.assertEqual(self.tenders.tenders.get(self.db, tender.id).status, TenderStatus.OPEN)
        self.assertIsNone(self.assert_ok(self.tenders.refresh_tender_status(self.db, tender.id)))

    def test_deletion_guards(self) -> None:
        tender = self.create_tender()
        lot = self.create_lot(tender.id)

        blocked = self.tenders.delete_tender(self.db, tender.id)
        self.assertEqual(blocked.error.message_key, "tender_has_lots")

        self.advance_lot_to(lot.id, LotState.UNDER_EXAMINATION)
        self.assert_ok(
            self.services.quotes.request_quote(self.db, lot.id, "F-1", self.now + timedelta(days=10))
        )
        lot_blocked = self.tenders.delete_lot(self.db, lot.id)
        self.assertEqual(lot_blocked.error.details["quotes"], 1)

        empty = self.create_lot(tender.id, "L2")
        self.assert_ok(self.tenders.delete_lot(self.db, empty.id))
        self.assertIsNone(self.tenders.lots.get(self.db, empty.id))
        self.assertEqual(self.tenders.delete_lot(self.db, empty.id).error.kind, ErrorKind.NOT_FOUND)

    def test_empty_tender_can_be_deleted(self) -> None:
        tender = self.create_tender()
        self.assert_ok(self.tenders.delete_tender(self.db, tender.id))
        self.assertEqual(self.tenders.get_tender(self.db, tender.id).error.kind, ErrorKind.NOT_FOUND)
