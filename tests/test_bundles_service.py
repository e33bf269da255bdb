from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from sqlalchemy import delete, func, select

from carerota.errors import NotFoundError, ValidationError
from carerota.models import ChangeRequest, ChangeRequestStatus, ShiftType, TimeEntry
from carerota.services.bundles import (
    approve_bundle,
    create_bundle,
    delete_bundle,
    deny_bundle,
    summarize_bundles,
)
from carerota.services.change_requests import (
    create_change_request,
    delete_change_request,
    deny_change_request,
    revert_change_request,
)
from carerota.services.notifications import RecordingNotificationSink
from carerota.services.time_utils import local_date
from carerota.settings import get_settings
from tests.db_support import SqliteDatabase, add_entry, add_instance, as_utc, seed_care_space, utc


class BundleServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        get_settings.cache_clear()
        self.database = SqliteDatabase()
        self.db = self.database.session()
        self.care_space, carers = seed_care_space(self.db)
        self.carer = carers[0]

    def tearDown(self) -> None:
        self.db.close()
        self.database.dispose()
        get_settings.cache_clear()

    def _bundle(self, start_date: date, end_date: date, **overrides):  # type: ignore[no-untyped-def]
        values = {
            "care_space_id": self.care_space.id,
            "carer_id": self.carer.id,
            "start_date": start_date,
            "end_date": end_date,
            "new_shift_type": ShiftType.ANNUAL_LEAVE,
            "reason": "summer holiday",
            "requested_by": "carer-1",
        }
        values.update(overrides)
        return create_bundle(self.db, **values)

    def test_five_day_leave_creates_one_bundle_with_placeholder_entries(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 5))

        request_ids = [item.id for item in result.requests]
        self.assertEqual(len(request_ids), 5)
        members = list(self.db.scalars(select(ChangeRequest).where(ChangeRequest.id.in_(request_ids))))
        self.assertEqual({member.bundle_id for member in members}, {result.bundle_id})
        self.assertTrue(all(member.status == ChangeRequestStatus.PENDING for member in members))
        self.assertTrue(all(member.new_shift_type == ShiftType.ANNUAL_LEAVE for member in members))

        entries = list(self.db.scalars(select(TimeEntry).order_by(TimeEntry.start_ts)))
        self.assertEqual([local_date(entry.start_ts) for entry in entries], [date(2024, 7, day) for day in range(1, 6)])
        # placeholder default window: 09:00-17:00 local
        self.assertEqual(as_utc(entries[0].start_ts), utc(2024, 7, 1, 8))
        self.assertEqual(as_utc(entries[0].end_ts), utc(2024, 7, 1, 16))
        self.assertTrue(all(entry.shift_type == ShiftType.BASIC for entry in entries))

        outcome = approve_bundle(self.db, result.bundle_id, actor_id="manager-1")

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.succeeded, sorted(request_ids))
        applied = list(self.db.scalars(select(ChangeRequest).where(ChangeRequest.bundle_id == result.bundle_id)))
        self.assertTrue(all(member.status == ChangeRequestStatus.APPLIED for member in applied))
        self.assertTrue(all(member.original_snapshot["shift_type"] == "basic" for member in applied))
        self.assertEqual(len({member.original_snapshot["start_ts"] for member in applied}), 5)
        self.assertEqual(
            self.db.scalar(
                select(func.count()).select_from(TimeEntry).where(TimeEntry.shift_type == ShiftType.ANNUAL_LEAVE)
            ),
            5,
        )

    def test_bundle_reuses_existing_entries_and_instances(self) -> None:
        existing = add_entry(self.db, carer=self.carer, start_ts=utc(2024, 7, 1, 6), end_ts=utc(2024, 7, 1, 12))
        instance = add_instance(self.db, carer=self.carer, scheduled_date=date(2024, 7, 2))

        result = self._bundle(date(2024, 7, 1), date(2024, 7, 2))

        first, second = sorted(result.requests, key=lambda item: item.id)
        self.assertEqual(first.time_entry_id, existing.id)
        self.assertEqual(as_utc(first.new_start_ts), utc(2024, 7, 1, 6))
        materialized = self.db.scalar(select(TimeEntry).where(TimeEntry.shift_instance_id == instance.id))
        self.assertIsNotNone(materialized)
        self.assertEqual(second.time_entry_id, materialized.id)

    def test_bundle_with_hours_proposes_default_window_of_that_length(self) -> None:
        result = self._bundle(date(2024, 1, 8), date(2024, 1, 8), hours=4)

        request = result.requests[0]
        self.assertEqual(as_utc(request.new_start_ts), utc(2024, 1, 8, 9))
        self.assertEqual(as_utc(request.new_end_ts), utc(2024, 1, 8, 13))

    def test_bundle_independence_when_one_target_is_deleted(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 3))
        first_id, second_id, third_id = sorted(item.id for item in result.requests)
        doomed_entry_id = self.db.get(ChangeRequest, second_id).time_entry_id
        with self.database.session() as other:
            other.execute(delete(TimeEntry).where(TimeEntry.id == doomed_entry_id))
            other.commit()

        sink = RecordingNotificationSink()
        outcome = approve_bundle(self.db, result.bundle_id, actor_id="manager-1", sink=sink)

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.succeeded, [first_id, third_id])
        self.assertEqual(outcome.failed, [second_id])
        self.assertEqual(outcome.errors, {second_id: "NOT_FOUND"})
        with self.database.session() as check:
            statuses = {
                row.id: row.status
                for row in check.scalars(select(ChangeRequest).where(ChangeRequest.bundle_id == result.bundle_id))
            }
            self.assertEqual(statuses[first_id], ChangeRequestStatus.APPLIED)
            self.assertEqual(statuses[second_id], ChangeRequestStatus.PENDING)
            self.assertEqual(statuses[third_id], ChangeRequestStatus.APPLIED)
        self.assertIn("bundle_approved", sink.kinds())

    def test_deny_bundle_reports_members_already_processed(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 2))
        first_id, second_id = sorted(item.id for item in result.requests)
        deny_change_request(self.db, first_id, actor_id="manager-1")

        outcome = deny_bundle(self.db, result.bundle_id, actor_id="manager-2", reason="cover unavailable")

        self.assertEqual(outcome.succeeded, [second_id])
        self.assertEqual(outcome.failed, [first_id])
        self.assertEqual(outcome.errors, {first_id: "ALREADY_PROCESSED"})
        self.assertEqual(self.db.get(ChangeRequest, second_id).denial_reason, "cover unavailable")

    def test_delete_bundle_removes_pending_members(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 3))

        outcome = delete_bundle(self.db, result.bundle_id, actor_id="carer-1")

        self.assertTrue(outcome.ok)
        self.assertEqual(len(outcome.succeeded), 3)
        self.assertEqual(
            self.db.scalar(select(func.count()).select_from(ChangeRequest).where(ChangeRequest.bundle_id == result.bundle_id)),
            0,
        )

    def _entry_count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(TimeEntry))

    def test_denied_bundle_leaves_no_placeholder_entries(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 5))
        self.assertEqual(self._entry_count(), 5)
        self.assertTrue(
            all(entry.placeholder_bundle_id == result.bundle_id for entry in self.db.scalars(select(TimeEntry)))
        )

        outcome = deny_bundle(self.db, result.bundle_id, actor_id="manager-1", reason="no cover")

        self.assertTrue(outcome.ok)
        self.assertEqual(self._entry_count(), 0)
        members = list(self.db.scalars(select(ChangeRequest).where(ChangeRequest.bundle_id == result.bundle_id)))
        self.assertEqual(len(members), 5)
        self.assertTrue(all(member.status == ChangeRequestStatus.DENIED for member in members))
        self.assertTrue(all(member.time_entry_id is None for member in members))

    def test_deleted_bundle_leaves_no_placeholder_entries(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 5))

        delete_bundle(self.db, result.bundle_id, actor_id="carer-1")

        self.assertEqual(self._entry_count(), 0)

    def test_denied_bundle_keeps_entries_it_did_not_create(self) -> None:
        existing = add_entry(self.db, carer=self.carer, start_ts=utc(2024, 7, 1, 6), end_ts=utc(2024, 7, 1, 12))
        instance = add_instance(self.db, carer=self.carer, scheduled_date=date(2024, 7, 2))
        existing_id = existing.id
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 3))

        deny_bundle(self.db, result.bundle_id, actor_id="manager-1")

        remaining = list(self.db.scalars(select(TimeEntry).order_by(TimeEntry.start_ts)))
        self.assertEqual(remaining[0].id, existing_id)
        self.assertEqual(len(remaining), 2)
        self.assertEqual(remaining[1].shift_instance_id, instance.id)
        self.assertTrue(all(entry.placeholder_bundle_id is None for entry in remaining))

    def test_placeholder_shared_with_another_request_survives_deny(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 1))
        placeholder_id = result.requests[0].time_entry_id
        other = create_change_request(
            self.db,
            requested_by="carer-1",
            time_entry_id=placeholder_id,
            new_start_ts=utc(2024, 7, 1, 9),
            new_end_ts=utc(2024, 7, 1, 13),
        )

        deny_bundle(self.db, result.bundle_id, actor_id="manager-1")
        self.assertIsNotNone(self.db.get(TimeEntry, placeholder_id))

        delete_change_request(self.db, other.id, actor_id="carer-1")
        self.assertEqual(self._entry_count(), 0)

    def test_reverting_an_approved_member_removes_its_placeholder(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 2))
        first_id, second_id = sorted(item.id for item in result.requests)
        approve_bundle(self.db, result.bundle_id, actor_id="manager-1")
        sink = RecordingNotificationSink()

        reverted = revert_change_request(self.db, first_id, actor_id="manager-1", force=True, sink=sink)

        self.assertEqual(reverted.status, ChangeRequestStatus.REVERTED)
        self.assertIsNone(reverted.time_entry_id)
        self.assertEqual(self._entry_count(), 1)
        self.assertEqual(sink.changes[0].details["placeholder_discarded"], True)
        remaining = self.db.scalar(select(TimeEntry))
        self.assertEqual(remaining.id, self.db.get(ChangeRequest, second_id).time_entry_id)
        self.assertEqual(remaining.shift_type, ShiftType.ANNUAL_LEAVE)

    def test_unknown_bundle_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            approve_bundle(self.db, "00000000-0000-0000-0000-000000000000", actor_id="manager-1")

    def test_bundle_in_other_care_space_is_not_found(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 1))
        with self.assertRaises(NotFoundError):
            approve_bundle(self.db, result.bundle_id, actor_id="manager-1", care_space_id=self.care_space.id + 1)

    def test_inverted_or_oversized_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self._bundle(date(2024, 7, 5), date(2024, 7, 1))

        with patch.dict("os.environ", {"MAX_BUNDLE_DAYS": "3"}):
            get_settings.cache_clear()
            with self.assertRaises(ValidationError):
                self._bundle(date(2024, 7, 1), date(2024, 7, 4))
        self.assertEqual(self.db.scalar(select(func.count()).select_from(ChangeRequest)), 0)

    def test_failed_creation_leaves_no_partial_bundle(self) -> None:
        with patch(
            "carerota.services.bundles.insert_change_request_in_session",
            side_effect=[ValidationError("boom")],
        ):
            with self.assertRaises(ValidationError):
                self._bundle(date(2024, 7, 1), date(2024, 7, 3))

        self.assertEqual(self.db.scalar(select(func.count()).select_from(ChangeRequest)), 0)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(TimeEntry)), 0)

    def test_summarize_collapses_bundle_and_passes_singles_through(self) -> None:
        result = self._bundle(date(2024, 7, 1), date(2024, 7, 3))
        single_entry = add_entry(self.db, carer=self.carer, start_ts=utc(2024, 8, 1, 8), end_ts=utc(2024, 8, 1, 16))
        single = create_change_request(
            self.db,
            requested_by="carer-1",
            time_entry_id=single_entry.id,
            new_start_ts=utc(2024, 8, 1, 9),
            new_end_ts=utc(2024, 8, 1, 16),
        )
        first_id = min(item.id for item in result.requests)
        deny_change_request(self.db, first_id, actor_id="manager-1")

        requests = list(self.db.scalars(select(ChangeRequest)))
        entries = {entry.id: entry for entry in self.db.scalars(select(TimeEntry))}
        summaries, singles = summarize_bundles(requests, entries_by_id=entries)

        self.assertEqual([item.id for item in singles], [single.id])
        self.assertEqual(len(summaries), 1)
        summary = summaries[0]
        self.assertEqual(summary.bundle_id, result.bundle_id)
        self.assertEqual(summary.start_date, date(2024, 7, 1))
        self.assertEqual(summary.end_date, date(2024, 7, 3))
        self.assertEqual(summary.member_count, 3)
        self.assertEqual(summary.status_counts, {"denied": 1, "pending": 2})
        self.assertEqual(summary.new_shift_type, ShiftType.ANNUAL_LEAVE)


if __name__ == "__main__":
    unittest.main()
