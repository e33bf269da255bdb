from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from sqlalchemy import update

from carerota.models import ChangeRequest, ChangeRequestStatus, TimeEntry
from carerota.services.change_requests import create_change_request
from scripts.predeploy_guard import check_data_consistency, check_revision_id_lengths
from tests.db_support import SqliteDatabase, add_entry, seed_care_space, utc


class RevisionLengthTests(unittest.TestCase):
    def test_shipped_migrations_fit_alembic_version_column(self) -> None:
        result = check_revision_id_lengths()

        self.assertTrue(result.ok)
        self.assertEqual(result.details["total"], 1)

    def test_long_revision_id_fails(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "0002_long.py").write_text(
                'revision: str = "0002_a_revision_identifier_that_is_far_too_long"\n',
                encoding="utf-8",
            )
            result = check_revision_id_lengths(Path(tmp))

        self.assertFalse(result.ok)
        self.assertEqual(result.details["too_long"], ["0002_a_revision_identifier_that_is_far_too_long"])


class DataConsistencyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        self.db = self.database.session()
        _, carers = seed_care_space(self.db)
        entry = add_entry(self.db, carer=carers[0], start_ts=utc(2024, 6, 10, 8), end_ts=utc(2024, 6, 10, 16))
        self.request_id = create_change_request(
            self.db,
            requested_by="carer-1",
            time_entry_id=entry.id,
            new_start_ts=utc(2024, 6, 10, 9),
            new_end_ts=utc(2024, 6, 10, 16),
        ).id

    def tearDown(self) -> None:
        self.db.close()
        self.database.dispose()

    def test_clean_workflow_data_passes(self) -> None:
        result = check_data_consistency(self.database.engine)

        self.assertTrue(result.ok)
        self.assertEqual(result.details["offenders"], {})

    def test_applied_request_without_snapshot_is_reported(self) -> None:
        self.db.execute(
            update(ChangeRequest)
            .where(ChangeRequest.id == self.request_id)
            .values(status=ChangeRequestStatus.APPLIED)
        )
        self.db.commit()

        result = check_data_consistency(self.database.engine)

        self.assertFalse(result.ok)
        self.assertEqual(result.details["offenders"], {"applied_request_without_snapshot": [self.request_id]})

    def test_placeholder_nobody_references_is_reported(self) -> None:
        carer = seed_care_space(self.db, name="Elm House", carer_names=("Cy",))[1][0]
        entry_id = add_entry(self.db, carer=carer, start_ts=utc(2024, 7, 1, 8), end_ts=utc(2024, 7, 1, 16)).id
        self.db.execute(
            update(TimeEntry)
            .where(TimeEntry.id == entry_id)
            .values(placeholder_bundle_id="5b0d7c1e-0000-4000-8000-000000000001")
        )
        self.db.commit()

        result = check_data_consistency(self.database.engine)

        self.assertEqual(result.details["offenders"], {"orphaned_placeholder_entry": [entry_id]})


if __name__ == "__main__":
    unittest.main()
