"""Holiday and lock calendars consulted when choosing which days to import.

Both maps are keyed by ``YYYY-MM``. A month without a stored holiday list
treats every Sunday as its only non-working days.
"""

from __future__ import annotations

import calendar
import json
import secrets
from datetime import date
from typing import Any

from fastapi import HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.config import settings


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def sundays(year: int, month: int) -> list[int]:
    month_length = calendar.monthrange(year, month)[1]
    return [day for day in range(1, month_length + 1) if date(year, month, day).weekday() == calendar.SUNDAY]


def effective_holidays(holidays_map: dict[str, list[int]], year: int, month: int) -> list[int]:
    stored = holidays_map.get(month_key(year, month))
    if stored is None:
        return sundays(year, month)
    return sorted(set(stored))


def working_days(holidays_map: dict[str, list[int]], year: int, month: int) -> list[int]:
    holidays = set(effective_holidays(holidays_map, year, month))
    month_length = calendar.monthrange(year, month)[1]
    return [day for day in range(1, month_length + 1) if day not in holidays]


def is_admin_pin(pin: str | None) -> bool:
    if not pin:
        return False
    return secrets.compare_digest(pin.strip(), settings.admin_pin)


def _parse_holidays(raw: str | None) -> list[int] | None:
    if raw is None:
        return None
    return [int(day) for day in json.loads(raw)]


def load_holidays_map(db: Session) -> dict[str, list[int]]:
    rows = db.execute(
        text("SELECT month_key, holidays FROM calendar_months WHERE holidays IS NOT NULL")
    ).mappings().all()
    return {row["month_key"]: _parse_holidays(row["holidays"]) or [] for row in rows}


def month_summary(db: Session, year: int, month: int) -> dict[str, Any]:
    key = month_key(year, month)
    row = db.execute(
        text("SELECT holidays, locked FROM calendar_months WHERE month_key = :month_key"),
        {"month_key": key},
    ).mappings().first()
    holidays_map: dict[str, list[int]] = {}
    locked = False
    if row is not None:
        stored = _parse_holidays(row["holidays"])
        if stored is not None:
            holidays_map[key] = stored
        locked = bool(row["locked"])

    holidays = effective_holidays(holidays_map, year, month)
    open_days = working_days(holidays_map, year, month)
    return {
        "month_key": key,
        "year": year,
        "month": month,
        "holidays": holidays,
        "holidays_customized": key in holidays_map,
        "locked": locked,
        "working_days": open_days,
        "working_day_count": len(open_days),
    }


def toggle_holiday(db: Session, year: int, month: int, day: int, *, admin: bool = False) -> dict[str, Any]:
    month_length = calendar.monthrange(year, month)[1]
    if day < 1 or day > month_length:
        raise HTTPException(status_code=400, detail=f"Day {day} is outside {year}-{month:02d}.")

    current = month_summary(db, year, month)
    if current["locked"] and not admin:
        raise HTTPException(status_code=403, detail=f"Holidays for {current['month_key']} are locked.")

    holidays = set(current["holidays"])
    if day in holidays:
        holidays.remove(day)
    else:
        holidays.add(day)

    db.execute(
        text(
            """
            INSERT INTO calendar_months (month_key, holidays, locked)
            VALUES (:month_key, :holidays, :locked)
            ON CONFLICT (month_key)
            DO UPDATE SET holidays = EXCLUDED.holidays
            """
        ),
        {"month_key": current["month_key"], "holidays": json.dumps(sorted(holidays)), "locked": False},
    )
    return month_summary(db, year, month)


def set_locked(db: Session, year: int, month: int, locked: bool) -> dict[str, Any]:
    db.execute(
        text(
            """
            INSERT INTO calendar_months (month_key, holidays, locked)
            VALUES (:month_key, NULL, :locked)
            ON CONFLICT (month_key)
            DO UPDATE SET locked = EXCLUDED.locked
            """
        ),
        {"month_key": month_key(year, month), "locked": locked},
    )
    return month_summary(db, year, month)
