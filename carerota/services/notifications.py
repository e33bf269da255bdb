from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

logger = logging.getLogger("carerota.notifications")


@dataclass(frozen=True, slots=True)
class ScheduleChange:
    """What a committed mutation touched, so calendar readers know what to reload."""

    kind: str
    entity_type: str
    entity_ids: tuple[int, ...]
    actor_id: str
    time_entry_ids: tuple[int, ...] = field(default_factory=tuple)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["entity_ids"] = list(self.entity_ids)
        payload["time_entry_ids"] = list(self.time_entry_ids)
        return payload


class NotificationSink(Protocol):
    def publish(self, change: ScheduleChange) -> None: ...


class LoggingNotificationSink:
    def publish(self, change: ScheduleChange) -> None:
        logger.info("schedule_changed", extra=change.to_dict())


class RecordingNotificationSink:
    def __init__(self) -> None:
        self.changes: list[ScheduleChange] = []

    def publish(self, change: ScheduleChange) -> None:
        self.changes.append(change)

    def kinds(self) -> list[str]:
        return [change.kind for change in self.changes]


def publish_change(sink: NotificationSink | None, change: ScheduleChange) -> None:
    """Deliver after commit only. A failing sink is logged; the committed change stands."""
    if sink is None:
        return
    try:
        sink.publish(change)
    except Exception:
        logger.exception(
            "schedule_change_publish_failed",
            extra={"kind": change.kind, "entity_type": change.entity_type, "entity_ids": list(change.entity_ids)},
        )


_default_sink = LoggingNotificationSink()


def get_notification_sink() -> NotificationSink:
    return _default_sink
