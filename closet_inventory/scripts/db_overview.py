#!/usr/bin/env python3
"""Database overview and integrity checks for the closet inventory."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "locations",
    "bins",
    "item_groups",
    "items",
    "checkouts",
    "reservations",
    "qr_codes",
    "activity_logs",
    "profiles",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "items": ["id", "item_group_id", "bin_id", "quantity_on_hand", "unit", "low_stock_threshold"],
    "checkouts": [
        "id",
        "checkout_batch_id",
        "borrower_name",
        "item_id",
        "bin_id",
        "quantity",
        "status",
        "issue_type",
        "issue_resolved",
        "due_back_at",
        "checked_out_at",
        "checked_in_at",
    ],
    "reservations": ["id", "item_id", "bin_id", "quantity", "status", "start_at", "end_at"],
    "qr_codes": ["id", "code", "type", "target_id"],
    "activity_logs": ["id", "user_id", "action", "entity_type", "entity_id", "details", "created_at"],
}

INTEGRITY_QUERIES: list[tuple[str, list[str], str]] = [
    (
        "items:negative_stock",
        ["items"],
        "SELECT COUNT(*) FROM items WHERE quantity_on_hand < 0",
    ),
    (
        "items:over_lent",
        ["items", "checkouts"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT i.id
            FROM items i
            JOIN checkouts c ON c.item_id = i.id AND c.status = 'checked_out'
            GROUP BY i.id, i.quantity_on_hand
            HAVING SUM(COALESCE(c.quantity, 0)) > i.quantity_on_hand
        ) d
        """,
    ),
    (
        "checkouts:bin_checked_out_twice",
        ["checkouts"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT bin_id
            FROM checkouts
            WHERE bin_id IS NOT NULL AND status = 'checked_out'
            GROUP BY bin_id
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    (
        "checkouts:no_item_or_bin",
        ["checkouts"],
        "SELECT COUNT(*) FROM checkouts WHERE item_id IS NULL AND bin_id IS NULL",
    ),
    (
        "checkouts:unknown_status",
        ["checkouts"],
        "SELECT COUNT(*) FROM checkouts WHERE status NOT IN ('checked_out', 'returned', 'lost')",
    ),
    (
        "qr_codes:duplicate_target",
        ["qr_codes"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT type, target_id
            FROM qr_codes
            GROUP BY type, target_id
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
]


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


def _existing_tables(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def run_existence_checks(tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
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


def run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for name, required_tables, sql in INTEGRITY_QUERIES:
        if not all(table in tables for table in required_tables):
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "checkouts" in tables:
        rows = _rows(
            engine,
            """
            SELECT checkout_batch_id, borrower_name, quantity, status, issue_type, checked_out_at
            FROM checkouts
            ORDER BY checked_out_at DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("checkouts (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "activity_logs" in tables:
        rows = _rows(
            engine,
            """
            SELECT action, entity_type, entity_id, user_id, created_at
            FROM activity_logs
            ORDER BY created_at DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("activity_logs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Closet inventory DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CLOSET_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CLOSET_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = _existing_tables(engine)
    existence = run_existence_checks(tables)
    columns = run_column_checks(engine, tables)
    integrity = run_integrity_checks(engine, tables)
    _print_results("Table Existence", existence)
    _print_results("Column Checks", columns)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(row.ok for row in [*existence, *columns, *integrity]) else 1


if __name__ == "__main__":
    sys.exit(main())
