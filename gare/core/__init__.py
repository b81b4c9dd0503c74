from gare.core.event_bus import (
    DomainEvent,
    EventBus,
    LotStateChanged,
    QuoteStateChanged,
    TenderStatusChanged,
    event_payload,
    get_event_bus,
    reset_event_bus_for_tests,
)

__all__ = [
    "DomainEvent",
    "EventBus",
    "LotStateChanged",
    "QuoteStateChanged",
    "TenderStatusChanged",
    "event_payload",
    "get_event_bus",
    "reset_event_bus_for_tests",
]
