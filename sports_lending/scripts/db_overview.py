#!/usr/bin/env python3
"""Database overview and integrity checks for the lending service."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Admins",
    "Students",
    "Equipment",
    "Requests",
    "RequestHistory",
    "RequestExtensions",
    "Notifications",
    "NotificationRecipients",
    "NotificationReads",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Equipment": [
        "EquipmentID",
        "Name",
        "Category",
        "QuantityTotal",
        "QuantityAvailable",
        "QuantityBorrowed",
        "QuantityDamaged",
        "IsActive",
    ],
    "Requests": [
        "RequestID",
        "StudentID",
        "EquipmentID",
        "Quantity",
        "Status",
        "BorrowDate",
        "ReturnDate",
        "ActualReturnDate",
    ],
    "Students": ["StudentID", "StudentNumber", "Email", "PhoneNumber", "IsVerified", "IsActive"],
    "Admins": ["AdminID", "Username", "PasswordHash", "PasswordSalt", "Role", "IsActive"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _run_existence_checks(engine: Engine, present: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, present: set[str]) -> list[CheckResult]:
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, present: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "Equipment" in present:
        checks.append(
            _count_check(
                engine,
                "equipment:quantity_sum_mismatch",
                """
                SELECT COUNT(*) FROM Equipment
                WHERE QuantityAvailable + QuantityBorrowed + QuantityDamaged <> QuantityTotal
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "equipment:negative_quantity",
                """
                SELECT COUNT(*) FROM Equipment
                WHERE QuantityAvailable < 0 OR QuantityBorrowed < 0 OR QuantityDamaged < 0
                """,
            )
        )

    if "Requests" in present:
        checks.append(
            _count_check(
                engine,
                "requests:duplicate_open_pair",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT StudentID, EquipmentID
                    FROM Requests
                    WHERE Status IN ('pending', 'approved')
                    GROUP BY StudentID, EquipmentID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "requests:return_before_borrow",
                "SELECT COUNT(*) FROM Requests WHERE ReturnDate <= BorrowDate",
            )
        )

    if "Requests" in present and "Equipment" in present:
        checks.append(
            _count_check(
                engine,
                "equipment:borrowed_vs_outstanding_requests",
                """
                SELECT COUNT(*)
                FROM Equipment e
                LEFT JOIN (
                    SELECT EquipmentID, SUM(Quantity) AS Outstanding
                    FROM Requests
                    WHERE Status IN ('approved', 'borrowed')
                    GROUP BY EquipmentID
                ) r ON r.EquipmentID = e.EquipmentID
                WHERE e.QuantityBorrowed <> COALESCE(r.Outstanding, 0)
                """,
            )
        )

    if "Students" in present:
        checks.append(
            _count_check(
                engine,
                "students:negative_counters",
                """
                SELECT COUNT(*) FROM Students
                WHERE TotalRequests < 0 OR ApprovedRequests < 0 OR RejectedRequests < 0
                   OR TotalEquipmentBorrowed < 0 OR TotalDaysBorrowed < 0
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, present: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_breakdown(engine: Engine, present: set[str]) -> None:
    if "Requests" not in present:
        return
    _print_section("Request Status")
    for status, count in _rows(engine, "SELECT Status, COUNT(*) FROM Requests GROUP BY Status ORDER BY Status"):
        print(f"{status}: {int(count)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Sports lending DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LENDING_DB_URL", ""))
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3
    return report(engine)


def report(engine: Engine) -> int:
    """Print the overview for ``engine``; 1 when an integrity check fails."""
    present = set(inspect(engine).get_table_names())
    integrity = _run_integrity_checks(engine, present)
    _print_results("Table Existence", _run_existence_checks(engine, present))
    _print_results("Column Checks", _run_column_checks(engine, present))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, present)
    _print_status_breakdown(engine, present)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
