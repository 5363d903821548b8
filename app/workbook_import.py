from __future__ import annotations

import calendar
import logging
import math
import re
from datetime import date, datetime, timedelta
from io import BytesIO
from typing import Any, Iterable

from fastapi import HTTPException

from app.calendar_settings import working_days

logger = logging.getLogger(__name__)

VALID_IMPORT_MODES = {"daily", "master", "territory-daily", "territory-master"}
OPENPYXL_EXTENSIONS = (".xlsx", ".xlsm", ".xltx", ".xltm")
XLRD_EXTENSIONS = (".xls",)

SALES_TEAMS = ("ACHIEVERS", "PASSIONATE", "CONCORD", "DYNAMIC")
PLAN_MARKERS = {"TGT", "TARGET", "PLAN"}
EXCLUDED_LABELS = {"ROW LABELS", "ACTUAL"}

DEPARTMENT_SALES = "Sales"
DEPARTMENT_TERRITORY_SALES = "Territory Sales"
DEFAULT_UNIT = "Units"
DEFAULT_STATUS = "on-track"

HEADER_SCAN_ROWS = 10
MASTER_SCAN_COLUMNS = 30
DAILY_SCAN_COLUMNS = 150

# 1900 date system. Serials above the threshold are dates from 2009 onward;
# the upper bound is 9999-12-31.
DATE_SERIAL_THRESHOLD = 40000
DATE_SERIAL_LIMIT = 2958466
EXCEL_EPOCH = datetime(1899, 12, 30)

MONTH_NAMES = list(calendar.month_name)[1:]

# Leading numeric prefix; trailing text is ignored ("120 units" is 120).
LEADING_NUMBER = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")

Sheet = tuple[str, list[list[Any]]]


class WorkbookImportError(Exception):
    kind = "import_error"

    def __init__(self, message: str, *, days: list[int] | None = None):
        super().__init__(message)
        self.message = message
        self.days = list(days or [])


class MalformedWorkbook(WorkbookImportError):
    kind = "malformed_workbook"


class NoMatchingColumns(WorkbookImportError):
    kind = "no_matching_columns"


class EmptyExtraction(WorkbookImportError):
    kind = "empty_extraction"


# Cell coercion


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).replace("\xa0", " ").strip()


def _to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        raw = _clean_text(value).replace(",", "").replace(" ", "")
        if not raw:
            return None
        match = LEADING_NUMBER.match(raw)
        if match is None:
            return None
        number = float(match.group(0))
    if not math.isfinite(number):
        return None
    return number


def _label_text(value: Any) -> str:
    # Zero and False first-column cells count as blank.
    if not isinstance(value, str) and not value:
        return ""
    return _clean_text(value)


def _serial_to_date(serial: float) -> date | None:
    if serial <= DATE_SERIAL_THRESHOLD or serial >= DATE_SERIAL_LIMIT:
        return None
    return (EXCEL_EPOCH + timedelta(days=int(serial))).date()


def _looks_like_serial(raw: str) -> bool:
    if len(raw) <= 4 or not raw.replace(".", "", 1).isdigit():
        return False
    return float(raw) > DATE_SERIAL_THRESHOLD


def _header_text(value: Any) -> str:
    """Render a header cell as text, decoding date cells to ``D/M/Y``."""
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return f"{value.day}/{value.month}/{value.year}"

    raw = _clean_text(value)
    if _looks_like_serial(raw):
        decoded = _serial_to_date(float(raw))
        if decoded is not None:
            return f"{decoded.day}/{decoded.month}/{decoded.year}"
    return raw


def _header_day(value: Any) -> int | None:
    parts = _header_text(value).split("/")
    if len(parts) != 3:
        return None
    try:
        day = int(parts[0].strip())
    except ValueError:
        return None
    return day if 1 <= day <= 31 else None


def _cell(row: list[Any], column: int) -> Any:
    return row[column] if column < len(row) else None


# Workbook reading and sheet selection


def _read_openpyxl(content: bytes) -> list[Sheet]:
    try:
        from openpyxl import load_workbook
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="Workbook import requires openpyxl. Install dependencies and redeploy.",
        ) from exc

    workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    try:
        return [
            (worksheet.title, [list(row) for row in worksheet.iter_rows(values_only=True)])
            for worksheet in workbook.worksheets
        ]
    finally:
        workbook.close()


def _read_xlrd(content: bytes) -> list[Sheet]:
    try:
        import xlrd
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="Legacy .xls import requires xlrd. Install dependencies and redeploy.",
        ) from exc

    book = xlrd.open_workbook(file_contents=content)
    return [
        (sheet.name, [sheet.row_values(i) for i in range(sheet.nrows)])
        for sheet in book.sheets()
    ]


def read_workbook(content: bytes, filename: str) -> list[Sheet]:
    reader = _read_xlrd if filename.lower().endswith(XLRD_EXTENSIONS) else _read_openpyxl
    try:
        sheets = reader(content)
    except HTTPException:
        raise
    except Exception as exc:
        raise MalformedWorkbook(f"Could not read workbook: {exc}") from exc
    if not sheets:
        raise MalformedWorkbook("Workbook contains no sheets.")
    return sheets


def select_sheet(sheets: list[Sheet], *, territory: bool) -> Sheet:
    for sheet in sheets:
        name = sheet[0].lower()
        if territory and ("territory" in name or "teritory" in name):
            return sheet
        if not territory and "sales" in name:
            return sheet
    return sheets[0]


# Column location


def locate_plan_column(rows: list[list[Any]]) -> int | None:
    for row in rows[:HEADER_SCAN_ROWS]:
        for column in range(min(len(row), MASTER_SCAN_COLUMNS)):
            if _clean_text(row[column]).upper() in PLAN_MARKERS:
                return column
    return None


def build_day_column_map(rows: list[list[Any]]) -> dict[int, int]:
    day_columns: dict[int, int] = {}
    for row in rows[:HEADER_SCAN_ROWS]:
        for column in range(min(len(row), DAILY_SCAN_COLUMNS)):
            day = _header_day(row[column])
            if day is not None:
                day_columns[day] = column
    return day_columns


# Row classification and extraction


def _team_header(label: str, teams: Iterable[str]) -> str | None:
    upper = label.upper()
    for team in teams:
        if upper == team.upper():
            return team.title()
    return None


def _is_excluded_label(label: str) -> bool:
    upper = label.upper()
    return upper in EXCLUDED_LABELS or "TOTAL" in upper


def extract_records(
    rows: list[list[Any]],
    column: int,
    report_date: str,
    *,
    department: str,
    master: bool,
    teams: Iterable[str] = SALES_TEAMS,
) -> list[dict[str, Any]]:
    team_names = tuple(teams)
    current_team: str | None = None
    records: list[dict[str, Any]] = []

    for row in rows:
        label = _label_text(_cell(row, 0))
        if not label:
            continue

        team = _team_header(label, team_names)
        if team is not None:
            current_team = team
            continue

        if current_team is None or _is_excluded_label(label):
            continue

        value = _to_number(_cell(row, column))
        # A zero reading is indistinguishable from an empty cell in these exports.
        if value is None or value == 0:
            continue

        records.append(
            {
                "department": department,
                "team": current_team,
                "metric": label,
                "plan": value if master else 0.0,
                "actual": 0.0 if master else value,
                "variance": 0.0,
                "unit": DEFAULT_UNIT,
                "status": DEFAULT_STATUS,
                "report_date": report_date,
            }
        )
    return records


# Reconciliation


def reconcile_records(
    existing: list[dict[str, Any]],
    new_records: list[dict[str, Any]],
    department: str,
) -> tuple[list[dict[str, Any]], int]:
    """Replace every (department, report_date) group touched by ``new_records``.

    Returns the merged collection and the number of existing records removed.
    """
    target_dates = {record["report_date"] for record in new_records}
    kept = [
        record
        for record in existing
        if not (record.get("department") == department and record.get("report_date") in target_dates)
    ]
    return kept + list(new_records), len(existing) - len(kept)


# Orchestration


def master_report_date(year: int, month: int) -> str:
    return f"MASTER_{MONTH_NAMES[month - 1]}_{year}"


def daily_report_date(year: int, month: int, day: int) -> str:
    return f"{MONTH_NAMES[month - 1]} {day:02d}, {year}"


def _normalize_import_mode(mode: str) -> str:
    resolved = _clean_text(mode).lower() or "daily"
    if resolved not in VALID_IMPORT_MODES:
        allowed = ", ".join(sorted(VALID_IMPORT_MODES))
        raise HTTPException(status_code=400, detail=f"Invalid import mode '{mode}'. Allowed: {allowed}.")
    return resolved


def _normalize_days(
    days: Iterable[int] | None,
    year: int,
    month: int,
    holidays_map: dict[str, list[int]] | None,
) -> list[int]:
    month_length = calendar.monthrange(year, month)[1]
    selected = sorted(set(days or []))
    for day in selected:
        if day < 1 or day > month_length:
            raise HTTPException(
                status_code=400,
                detail=f"Day {day} is outside {MONTH_NAMES[month - 1]} {year} (1-{month_length}).",
            )
    if not selected:
        selected = working_days(holidays_map or {}, year, month)
    if not selected:
        raise HTTPException(status_code=400, detail="Select at least one day to import.")
    return selected


def _failure_message(exc: WorkbookImportError, master: bool) -> str:
    if isinstance(exc, MalformedWorkbook):
        return "Failed to parse workbook. Check format."
    if master:
        return "Could not find a TGT/TARGET/PLAN column for the master plan in the workbook."
    days = ", ".join(str(day) for day in exc.days)
    return f"Could not find columns for selected days ({days}) in the workbook."


def _extract_batch(
    sheet: Sheet,
    *,
    master: bool,
    department: str,
    year: int,
    month: int,
    days: list[int],
    summary: dict[str, Any],
) -> list[dict[str, Any]]:
    _, rows = sheet
    if master:
        column = locate_plan_column(rows)
        if column is None:
            raise NoMatchingColumns("No TGT/TARGET/PLAN marker in the header rows.", days=days)
        columns = {days[0]: column}
    else:
        day_columns = build_day_column_map(rows)
        columns = {day: day_columns[day] for day in days if day in day_columns}
        summary["missing_days"] = [day for day in days if day not in day_columns]
        if not columns:
            raise NoMatchingColumns("No date-shaped header matches the selected days.", days=days)

    batch: list[dict[str, Any]] = []
    for day, column in columns.items():
        report_date = master_report_date(year, month) if master else daily_report_date(year, month, day)
        batch.extend(
            extract_records(rows, column, report_date, department=department, master=master)
        )
    if not batch:
        raise EmptyExtraction("Columns were found but no row held a non-zero numeric value.", days=days)
    return batch


def import_performance_workbook(
    content: bytes,
    filename: str,
    *,
    mode: str = "daily",
    year: int,
    month: int,
    days: Iterable[int] | None = None,
    existing: list[dict[str, Any]] | None = None,
    holidays_map: dict[str, list[int]] | None = None,
) -> dict[str, Any]:
    if not filename.lower().endswith(OPENPYXL_EXTENSIONS + XLRD_EXTENSIONS):
        raise HTTPException(status_code=400, detail="Upload an .xlsx or .xls workbook")
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded workbook is empty")
    if year < 2000 or year > 2100:
        raise HTTPException(status_code=400, detail="Year must be between 2000 and 2100.")
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")

    resolved_mode = _normalize_import_mode(mode)
    master = resolved_mode.endswith("master")
    territory = resolved_mode.startswith("territory")
    department = DEPARTMENT_TERRITORY_SALES if territory else DEPARTMENT_SALES
    # Master imports ignore the day selection.
    selected_days = [0] if master else _normalize_days(days, year, month, holidays_map)
    current = list(existing or [])

    summary: dict[str, Any] = {
        "ok": False,
        "filename": filename,
        "mode": resolved_mode,
        "department": department,
        "year": year,
        "month": month,
        "days": [] if master else selected_days,
        "missing_days": [],
        "sheet": None,
        "report_dates": [],
        "records_imported": 0,
        "dates_touched": 0,
        "records_replaced": 0,
        "new_records": [],
        "records": current,
        "error_kind": None,
        "message": "",
    }

    try:
        sheets = read_workbook(content, filename)
        sheet = select_sheet(sheets, territory=territory)
        summary["sheet"] = sheet[0]
        try:
            batch = _extract_batch(
                sheet,
                master=master,
                department=department,
                year=year,
                month=month,
                days=selected_days,
                summary=summary,
            )
        except WorkbookImportError:
            raise
        except Exception as exc:
            raise MalformedWorkbook(f"Unexpected error while scanning sheet: {exc}") from exc
    except WorkbookImportError as exc:
        summary["error_kind"] = exc.kind
        summary["message"] = _failure_message(exc, master)
        logger.warning("Workbook import failed (%s) for %s: %s", exc.kind, filename, exc.message)
        return summary

    merged, replaced = reconcile_records(current, batch, department)
    report_dates = list(dict.fromkeys(record["report_date"] for record in batch))
    summary.update(
        {
            "ok": True,
            "report_dates": report_dates,
            "records_imported": len(batch),
            "dates_touched": len(report_dates),
            "records_replaced": replaced,
            "new_records": batch,
            "records": merged,
            "message": f"Imported {len(batch)} items across {len(report_dates)} dates.",
        }
    )
    logger.info(
        "Imported %d %s records from %s across %d dates (%d replaced)",
        len(batch),
        department,
        filename,
        len(report_dates),
        replaced,
    )
    return summary
