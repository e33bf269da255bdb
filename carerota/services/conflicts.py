from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from carerota.models import ChangeRequest, TimeEntry
from carerota.services.time_utils import normalize_optional_ts


@dataclass(frozen=True, slots=True)
class ConflictCheck:
    ok: bool
    applied_at: datetime | None
    modified_at: datetime | None


def check_revert_conflict(change_request: ChangeRequest, entry: TimeEntry) -> ConflictCheck:
    """An entry written after the request took effect must not be silently overwritten."""
    applied_at = normalize_optional_ts(change_request.applied_at)
    modified_at = normalize_optional_ts(entry.updated_at)
    if applied_at is None or modified_at is None:
        return ConflictCheck(ok=True, applied_at=applied_at, modified_at=modified_at)
    return ConflictCheck(ok=modified_at <= applied_at, applied_at=applied_at, modified_at=modified_at)
