from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from carerota.errors import ValidationError
from carerota.models import ShiftType, TimeEntry
from carerota.services.time_utils import normalize_ts


@dataclass(frozen=True, slots=True)
class Snapshot:
    start_ts: datetime
    end_ts: datetime
    shift_type: ShiftType
    notes: str | None
    captured_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_ts": self.start_ts.isoformat(),
            "end_ts": self.end_ts.isoformat(),
            "shift_type": self.shift_type.value,
            "notes": self.notes,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Snapshot:
        try:
            return cls(
                start_ts=normalize_ts(datetime.fromisoformat(raw["start_ts"])),
                end_ts=normalize_ts(datetime.fromisoformat(raw["end_ts"])),
                shift_type=ShiftType(raw["shift_type"]),
                notes=raw.get("notes"),
                captured_at=normalize_ts(datetime.fromisoformat(raw["captured_at"])),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Stored snapshot is malformed") from exc


def capture_snapshot(entry: TimeEntry, *, captured_at: datetime) -> Snapshot:
    return Snapshot(
        start_ts=normalize_ts(entry.start_ts),
        end_ts=normalize_ts(entry.end_ts),
        shift_type=ShiftType(entry.shift_type),
        notes=entry.notes,
        captured_at=normalize_ts(captured_at),
    )


def restore_snapshot(snapshot: Snapshot, entry: TimeEntry) -> None:
    entry.start_ts = snapshot.start_ts
    entry.end_ts = snapshot.end_ts
    entry.shift_type = snapshot.shift_type
    entry.notes = snapshot.notes
