import unittest

from gare.application.unit_of_work import unit_of_work
from gare.core import EventBus, LotStateChanged, event_payload
from gare.observability import metrics_snapshot, reset_metrics_for_tests


def _lot_event(**overrides) -> LotStateChanged:
    attrs = {
        "lot_id": 1,
        "tender_id": 1,
        "from_state": "created",
        "to_state": "technical_evaluation",
        "actor": "operatore.1",
    }
    attrs.update(overrides)
    return LotStateChanged(**attrs)


class _FakeDb:
    def __init__(self) -> None:
        self.trace = []

    def transaction(self):
        db = self

        class _Tx:
            def __enter__(self):
                db.trace.append("begin")

            def __exit__(self, exc_type, exc, tb):
                db.trace.append("rollback" if exc_type else "commit")
                return False

        return _Tx()


class EventBusTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()

    def test_handler_execution_order_is_predictable(self) -> None:
        bus = EventBus()
        execution_trace = []
        bus.subscribe(LotStateChanged, lambda _event: execution_trace.append("first"))
        bus.subscribe(LotStateChanged, lambda _event: execution_trace.append("second"))

        bus.publish(_lot_event())

        self.assertEqual(execution_trace, ["first", "second"])
        self.assertEqual(metrics_snapshot()["domain_event_emitted_total"], {"LotStateChanged": 1})

    def test_failing_handler_does_not_block_the_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("handler rotto")

        bus.subscribe(LotStateChanged, broken)
        bus.subscribe(LotStateChanged, received.append)

        with self.assertLogs("gare", level="ERROR") as logs:
            bus.publish(_lot_event())

        self.assertEqual(len(received), 1)
        self.assertTrue(any("event_handler_failed" in line for line in logs.output))

    def test_event_defaults_are_normalized(self) -> None:
        event = _lot_event(actor="  ")
        self.assertEqual(event.actor, "system")
        self.assertTrue(event.event_id)
        payload = event_payload(event)
        self.assertTrue(payload["occurred_at"].endswith("Z"))
        self.assertEqual(payload["to_state"], "technical_evaluation")

    def test_events_are_published_only_after_commit(self) -> None:
        bus = EventBus()
        db = _FakeDb()
        bus.subscribe(LotStateChanged, lambda _event: db.trace.append("published"))

        with unit_of_work(db, bus) as events:
            events.append(_lot_event())
            db.trace.append("write")

        self.assertEqual(db.trace, ["begin", "write", "commit", "published"])

    def test_rolled_back_work_publishes_nothing(self) -> None:
        bus = EventBus()
        db = _FakeDb()
        received = []
        bus.subscribe(LotStateChanged, received.append)

        with self.assertRaises(ValueError):
            with unit_of_work(db, bus) as events:
                events.append(_lot_event())
                raise ValueError("scrittura fallita")

        self.assertEqual(received, [])
        self.assertEqual(db.trace, ["begin", "rollback"])


if __name__ == "__main__":
    unittest.main()
