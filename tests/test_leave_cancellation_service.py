from __future__ import annotations

import unittest

from sqlalchemy import func, select, update

from carerota.errors import AlreadyProcessedError, DuplicateRequestError, ValidationError
from carerota.models import LeaveCancellationRequest, LeaveCancellationStatus, ShiftType, TimeEntry
from carerota.services.change_requests import approve_change_request, create_change_request
from carerota.services.leave_cancellation import (
    approve_leave_cancellation,
    deny_leave_cancellation,
    list_leave_cancellation_requests,
    request_leave_cancellation,
)
from carerota.services.notifications import RecordingNotificationSink
from tests.db_support import SqliteDatabase, add_entry, seed_care_space, utc


class LeaveCancellationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        self.db = self.database.session()
        self.care_space, carers = seed_care_space(self.db, carer_names=("Ada", "Bea"))
        self.ada, self.bea = carers
        # 09:00-17:00 local on 2024-06-10 (BST)
        self.leave = add_entry(
            self.db,
            carer=self.ada,
            start_ts=utc(2024, 6, 10, 8),
            end_ts=utc(2024, 6, 10, 16),
            shift_type=ShiftType.ANNUAL_LEAVE,
        )

    def tearDown(self) -> None:
        self.db.close()
        self.database.dispose()

    def _add_cover(self, *, day: int = 10, carer=None) -> TimeEntry:  # type: ignore[no-untyped-def]
        return add_entry(
            self.db,
            carer=carer or self.bea,
            start_ts=utc(2024, 6, day, 8),
            end_ts=utc(2024, 6, day, 16),
            shift_type=ShiftType.COVER,
        )

    def test_conflicting_cover_creates_pending_request_then_approval_cleans_up(self) -> None:
        cover = self._add_cover()
        cover_id = cover.id
        sink = RecordingNotificationSink()

        outcome = request_leave_cancellation(
            self.db,
            time_entry_id=self.leave.id,
            requester_id="carer-ada",
            care_space_id=self.care_space.id,
            sink=sink,
        )

        self.assertFalse(outcome.cancelled)
        self.assertIsNotNone(outcome.request)
        self.assertEqual(outcome.request.status, LeaveCancellationStatus.PENDING)
        self.assertEqual(outcome.request.conflict_shift_ids, [cover_id])
        self.assertEqual(
            outcome.request.conflict_details,
            [
                {
                    "shift_id": cover_id,
                    "carer_id": self.bea.id,
                    "carer_name": "Bea",
                    "date": "2024-06-10",
                    "time": "09:00-17:00",
                }
            ],
        )
        self.assertEqual(self.db.get(TimeEntry, self.leave.id).shift_type, ShiftType.ANNUAL_LEAVE)

        approved = approve_leave_cancellation(self.db, outcome.request.id, actor_id="manager-1", sink=sink)

        self.assertEqual(approved.status, LeaveCancellationStatus.APPROVED)
        self.assertEqual(approved.reviewed_by, "manager-1")
        with self.database.session() as check:
            self.assertEqual(check.get(TimeEntry, self.leave.id).shift_type, ShiftType.BASIC)
            self.assertIsNone(check.get(TimeEntry, cover_id))
        self.assertEqual(sink.kinds(), ["leave_cancellation_requested", "leave_cancellation_approved"])

    def test_no_conflicts_cancels_immediately_without_request(self) -> None:
        leave = add_entry(
            self.db,
            carer=self.ada,
            start_ts=utc(2024, 6, 11, 8),
            end_ts=utc(2024, 6, 11, 16),
            shift_type=ShiftType.SICKNESS,
        )
        self._add_cover(day=10)

        outcome = request_leave_cancellation(self.db, time_entry_id=leave.id, requester_id="carer-ada")

        self.assertTrue(outcome.cancelled)
        self.assertIsNone(outcome.request)
        self.assertEqual(self.db.get(TimeEntry, leave.id).shift_type, ShiftType.BASIC)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(LeaveCancellationRequest)), 0)

    def test_own_cover_and_other_care_space_do_not_conflict(self) -> None:
        self._add_cover(carer=self.ada)
        _, outsiders = seed_care_space(self.db, name="Elm House", carer_names=("Cy",))
        self._add_cover(carer=outsiders[0])

        outcome = request_leave_cancellation(self.db, time_entry_id=self.leave.id, requester_id="carer-ada")

        self.assertTrue(outcome.cancelled)

    def test_second_pending_request_for_same_entry_is_duplicate(self) -> None:
        self._add_cover()
        first = request_leave_cancellation(self.db, time_entry_id=self.leave.id, requester_id="carer-ada")

        with self.assertRaises(DuplicateRequestError) as ctx:
            request_leave_cancellation(self.db, time_entry_id=self.leave.id, requester_id="carer-ada")

        self.assertEqual(ctx.exception.existing_id, first.request.id)

    def test_non_leave_entry_is_rejected(self) -> None:
        cover = self._add_cover()
        with self.assertRaises(ValidationError):
            request_leave_cancellation(self.db, time_entry_id=cover.id, requester_id="carer-bea")

    def test_deny_keeps_leave_and_cover(self) -> None:
        cover = self._add_cover()
        cover_id = cover.id
        outcome = request_leave_cancellation(self.db, time_entry_id=self.leave.id, requester_id="carer-ada")

        denied = deny_leave_cancellation(self.db, outcome.request.id, actor_id="manager-1")

        self.assertEqual(denied.status, LeaveCancellationStatus.DENIED)
        self.assertEqual(self.db.get(TimeEntry, self.leave.id).shift_type, ShiftType.ANNUAL_LEAVE)
        self.assertIsNotNone(self.db.get(TimeEntry, cover_id))
        with self.assertRaises(AlreadyProcessedError):
            approve_leave_cancellation(self.db, outcome.request.id, actor_id="manager-1")

    def _pending_cancellation_for(self, cover: TimeEntry) -> tuple[int, int]:
        cover_id = cover.id
        outcome = request_leave_cancellation(self.db, time_entry_id=self.leave.id, requester_id="carer-ada")
        self.assertEqual(outcome.request.conflict_shift_ids, [cover_id])
        return outcome.request.id, cover_id

    def test_approval_keeps_listed_shift_that_is_no_longer_cover(self) -> None:
        request_id, cover_id = self._pending_cancellation_for(self._add_cover())
        change_request = create_change_request(
            self.db,
            requested_by="carer-bea",
            time_entry_id=cover_id,
            new_start_ts=utc(2024, 6, 10, 8),
            new_end_ts=utc(2024, 6, 10, 16),
            new_shift_type=ShiftType.BASIC,
        )
        approve_change_request(self.db, change_request.id, actor_id="manager-1")
        sink = RecordingNotificationSink()

        approve_leave_cancellation(self.db, request_id, actor_id="manager-1", sink=sink)

        with self.database.session() as check:
            self.assertEqual(check.get(TimeEntry, self.leave.id).shift_type, ShiftType.BASIC)
            kept = check.get(TimeEntry, cover_id)
            self.assertIsNotNone(kept)
            self.assertEqual(kept.shift_type, ShiftType.BASIC)
        self.assertEqual(sink.changes[-1].time_entry_ids, (self.leave.id,))

    def test_approval_keeps_listed_cover_now_held_by_the_leave_owner(self) -> None:
        request_id, cover_id = self._pending_cancellation_for(self._add_cover())
        self.db.execute(update(TimeEntry).where(TimeEntry.id == cover_id).values(carer_id=self.ada.id))
        self.db.commit()

        approve_leave_cancellation(self.db, request_id, actor_id="manager-1")

        with self.database.session() as check:
            self.assertIsNotNone(check.get(TimeEntry, cover_id))

    def test_approval_keeps_listed_cover_moved_to_another_day(self) -> None:
        request_id, cover_id = self._pending_cancellation_for(self._add_cover())
        self.db.execute(
            update(TimeEntry)
            .where(TimeEntry.id == cover_id)
            .values(start_ts=utc(2024, 6, 12, 8), end_ts=utc(2024, 6, 12, 16))
        )
        self.db.commit()

        approve_leave_cancellation(self.db, request_id, actor_id="manager-1")

        with self.database.session() as check:
            self.assertIsNotNone(check.get(TimeEntry, cover_id))

    def test_list_filters_by_status(self) -> None:
        self._add_cover()
        outcome = request_leave_cancellation(self.db, time_entry_id=self.leave.id, requester_id="carer-ada")

        pending = list_leave_cancellation_requests(
            self.db,
            care_space_id=self.care_space.id,
            status=LeaveCancellationStatus.PENDING,
        )
        denied = list_leave_cancellation_requests(
            self.db,
            care_space_id=self.care_space.id,
            status=LeaveCancellationStatus.DENIED,
        )

        self.assertEqual([item.id for item in pending], [outcome.request.id])
        self.assertEqual(denied, [])


if __name__ == "__main__":
    unittest.main()
