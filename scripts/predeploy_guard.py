#!/usr/bin/env python
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from carerota.services.schema_guard import verify_runtime_schema

ROOT_DIR = Path(__file__).resolve().parents[1]
VERSIONS_DIR = ROOT_DIR / "carerota" / "migrations" / "versions"

# each query returns offending row ids; any row fails the check
CONSISTENCY_QUERIES: dict[str, str] = {
    "applied_request_without_snapshot": """
        select id from change_requests
        where status in ('applied', 'reverted') and original_snapshot is null
        limit 20
    """,
    "pending_request_with_snapshot": """
        select id from change_requests
        where status = 'pending' and original_snapshot is not null
        limit 20
    """,
    "bundle_spanning_care_spaces": """
        select bundle_id from change_requests
        where bundle_id is not null
        group by bundle_id
        having count(distinct care_space_id) > 1
        limit 20
    """,
    "pending_cancellation_for_non_leave_entry": """
        select lcr.id
        from leave_cancellation_requests lcr
        join time_entries te on te.id = lcr.time_entry_id
        where lcr.status = 'pending'
          and te.shift_type not in ('sickness', 'annual_leave', 'public_holiday')
        limit 20
    """,
    "orphaned_placeholder_entry": """
        select te.id
        from time_entries te
        where te.placeholder_bundle_id is not null
          and not exists (select 1 from change_requests cr where cr.time_entry_id = te.id)
          and not exists (select 1 from leave_cancellation_requests lcr where lcr.time_entry_id = te.id)
        limit 20
    """,
}


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _extract_revision_ids(versions_dir: Path = VERSIONS_DIR) -> list[str]:
    revisions: list[str] = []
    pattern = re.compile(r'^\s*revision\s*:\s*str\s*=\s*"([^"]+)"\s*$', re.MULTILINE)
    for path in sorted(versions_dir.glob("*.py")):
        if path.name.startswith("__"):
            continue
        content = path.read_text(encoding="utf-8")
        match = pattern.search(content)
        if match:
            revisions.append(match.group(1).strip())
    return revisions


def check_revision_id_lengths(versions_dir: Path = VERSIONS_DIR) -> CheckResult:
    revisions = _extract_revision_ids(versions_dir)
    too_long = [revision for revision in revisions if len(revision) > 32]
    return CheckResult(
        name="migration_revision_length",
        status="ok" if not too_long else "fail",
        details={
            "max_len": 32,
            "too_long": too_long,
            "total": len(revisions),
        },
    )


def check_data_consistency(engine: Engine) -> CheckResult:
    offenders: dict[str, list[Any]] = {}
    with engine.connect() as connection:
        for name, query in CONSISTENCY_QUERIES.items():
            rows = [row[0] for row in connection.execute(text(query)).fetchall()]
            if rows:
                offenders[name] = rows
    return CheckResult(
        name="workflow_data_consistency",
        status="ok" if not offenders else "fail",
        details={"offenders": offenders, "checked": sorted(CONSISTENCY_QUERIES)},
    )


def _expected_alembic_heads() -> list[str]:
    config = Config(str(ROOT_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT_DIR / "carerota" / "migrations"))
    script = ScriptDirectory.from_config(config)
    return sorted(script.get_heads())


def _check_database(database_url: str) -> list[CheckResult]:
    expected_heads = _expected_alembic_heads()
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as connection:
            current_versions = [
                str(row[0]).strip()
                for row in connection.execute(text("SELECT version_num FROM alembic_version")).fetchall()
                if row and row[0] is not None
            ]
        schema_result = verify_runtime_schema(engine)
        consistency = check_data_consistency(engine) if schema_result.ok else None
    finally:
        engine.dispose()

    missing_heads = [head for head in expected_heads if head not in current_versions]
    status = "ok"
    if missing_heads or (not schema_result.ok):
        status = "fail"

    results = [
        CheckResult(
            name="database_schema_guard",
            status=status,
            details={
                "expected_heads": expected_heads,
                "current_versions": current_versions,
                "missing_heads": missing_heads,
                "schema_guard_ok": schema_result.ok,
                "schema_guard_issues": schema_result.issues,
                "schema_guard_warnings": schema_result.warnings,
            },
        )
    ]
    if consistency is not None:
        results.append(consistency)
    return results


def main() -> int:
    checks = [check_revision_id_lengths()]
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if database_url:
        checks.extend(_check_database(database_url))
    else:
        checks.append(
            CheckResult(
                name="database_schema_guard",
                status="warn",
                details={"reason": "DATABASE_URL_NOT_SET"},
            )
        )

    failed_checks = [check for check in checks if check.status == "fail"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": len(failed_checks) == 0,
        "checks": [
            {
                "name": check.name,
                "status": check.status,
                "details": check.details,
            }
            for check in checks
        ],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if len(failed_checks) == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
