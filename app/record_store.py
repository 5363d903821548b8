from __future__ import annotations

from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

RECORD_COLUMNS = ("department", "team", "metric", "plan", "actual", "variance", "unit", "status", "report_date")


def _row_to_record(row: Any) -> dict[str, Any]:
    record = {column: row[column] for column in RECORD_COLUMNS}
    for column in ("plan", "actual", "variance"):
        record[column] = float(record[column] or 0)
    return record


def load_records(
    db: Session,
    *,
    department: str | None = None,
    report_date: str | None = None,
    team: str | None = None,
) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            """
            SELECT department, team, metric, plan, actual, variance, unit, status, report_date
            FROM performance_records
            WHERE (:department IS NULL OR department = :department)
              AND (:report_date IS NULL OR report_date = :report_date)
              AND (:team IS NULL OR LOWER(team) = LOWER(:team))
            ORDER BY id
            """
        ),
        {"department": department, "report_date": report_date, "team": team},
    ).mappings().all()
    return [_row_to_record(row) for row in rows]


def list_report_dates(db: Session, *, department: str | None = None) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            """
            SELECT department, report_date, COUNT(*) AS record_count
            FROM performance_records
            WHERE (:department IS NULL OR department = :department)
            GROUP BY department, report_date
            ORDER BY department, MIN(id)
            """
        ),
        {"department": department},
    ).mappings().all()
    return [dict(row) for row in rows]


def apply_batch(db: Session, department: str, records: list[dict[str, Any]]) -> int:
    """Replace every stored (department, report_date) group present in ``records``.

    Runs inside the caller's transaction; the caller commits or rolls back.
    Returns the number of rows removed.
    """
    if not records:
        return 0

    report_dates = sorted({record["report_date"] for record in records})
    removed = db.execute(
        text(
            """
            DELETE FROM performance_records
            WHERE department = :department
              AND report_date IN :report_dates
            """
        ).bindparams(bindparam("report_dates", expanding=True)),
        {"department": department, "report_dates": report_dates},
    ).rowcount

    db.execute(
        text(
            """
            INSERT INTO performance_records
              (department, team, metric, plan, actual, variance, unit, status, report_date, created_at)
            VALUES
              (:department, :team, :metric, :plan, :actual, :variance, :unit, :status, :report_date, NOW())
            """
        ),
        [{column: record.get(column) for column in RECORD_COLUMNS} for record in records],
    )
    return int(removed or 0)


def reset_records(db: Session) -> int:
    return int(db.execute(text("DELETE FROM performance_records")).rowcount or 0)
