from __future__ import annotations

import logging
from typing import Protocol, Sequence

from flask import Flask

from gare.domain.records import StateChangeRecord
from gare.ui_strings import state_label


_GROUP_BY_ENTITY = {
    "lot": "lotto",
    "tender": "gara",
    "quote": "preventivo",
}


class NotificationDispatcher(Protocol):
    def dispatch(self, records: Sequence[StateChangeRecord]) -> None:
        ...


class LoggingNotificationDispatcher:
    """Writes one structured log line per state change; delivery is left to log shipping."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("gare.notifications")

    def dispatch(self, records: Sequence[StateChangeRecord]) -> None:
        for record in records:
            group = _GROUP_BY_ENTITY.get(record.entity, record.entity)
            self._logger.info(
                "state_change_notification",
                extra={
                    **record.to_dict(),
                    "from_label": state_label(group, record.from_state),
                    "to_label": state_label(group, record.to_state),
                },
            )


def get_notification_dispatcher(app: Flask) -> NotificationDispatcher:
    dispatcher = app.extensions.get("notification_dispatcher")
    if dispatcher is None:
        dispatcher = LoggingNotificationDispatcher()
        app.extensions["notification_dispatcher"] = dispatcher
    return dispatcher
