import calendar
import logging

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy import text
from sqlalchemy.orm import Session

from app import models  # noqa: F401  registers tables on Base.metadata
from app.calendar_settings import is_admin_pin, load_holidays_map, month_summary, set_locked, toggle_holiday
from app.database import Base, SessionLocal, engine
from app.record_store import apply_batch, list_report_dates, load_records, reset_records
from app.workbook_import import import_performance_workbook

app = FastAPI(title="Performance Tracker")
logger = logging.getLogger(__name__)


@app.on_event("startup")
def ensure_tables():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def parse_optional_int(value: str | None) -> int | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    try:
        return int(cleaned)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid integer value") from exc


def parse_day_list(value: str | None) -> list[int]:
    if value is None:
        return []
    days: list[int] = []
    for part in value.replace(";", ",").split(","):
        day = parse_optional_int(part)
        if day is not None:
            days.append(day)
    return days


def ensure_valid_month(year: int, month: int):
    if year < 2000 or year > 2100:
        raise HTTPException(status_code=400, detail="Year must be between 2000 and 2100.")
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")


def require_admin(pin: str):
    if not is_admin_pin(pin):
        raise HTTPException(status_code=403, detail="Invalid admin PIN.")


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.get("/api/records")
def list_records(
    department: str | None = Query(None),
    report_date: str | None = Query(None),
    team: str | None = Query(None),
    db: Session = Depends(get_db),
):
    records = load_records(db, department=department or None, report_date=report_date or None, team=team or None)
    return {"count": len(records), "records": records}


@app.get("/api/report-dates")
def report_dates(department: str | None = Query(None), db: Session = Depends(get_db)):
    return {"report_dates": list_report_dates(db, department=department or None)}


@app.post("/import/workbook")
async def import_workbook(
    workbook_file: UploadFile = File(...),
    mode: str = Form("daily"),
    year: int = Form(...),
    month: int = Form(...),
    days: str = Form(""),
    import_mode: str = Form("apply"),
    db: Session = Depends(get_db),
):
    action = import_mode.strip().lower() or "apply"
    if action not in {"preview", "apply"}:
        raise HTTPException(status_code=400, detail="Invalid import mode. Use preview or apply.")
    ensure_valid_month(year, month)

    payload = await workbook_file.read()
    try:
        existing = load_records(db)
        result = import_performance_workbook(
            payload,
            workbook_file.filename or "workbook.xlsx",
            mode=mode,
            year=year,
            month=month,
            days=parse_day_list(days),
            existing=existing,
            holidays_map=load_holidays_map(db),
        )
        response = {key: value for key, value in result.items() if key != "records"}
        response["preview"] = action == "preview"
        response["total_records"] = len(result["records"])
        if not result["ok"]:
            db.rollback()
            return JSONResponse(status_code=422, content=response)

        if action == "preview":
            db.rollback()
            return response

        apply_batch(db, result["department"], result["new_records"])
        db.commit()
        return response
    except HTTPException:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error during workbook import")
        raise HTTPException(status_code=500, detail="Unexpected import database error.") from exc


@app.post("/api/records/reset")
def reset(pin: str = Form(""), db: Session = Depends(get_db)):
    require_admin(pin)
    try:
        removed = reset_records(db)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while resetting records")
        raise HTTPException(status_code=500, detail="Unexpected database error.") from exc
    logger.info("Performance records reset (%d removed)", removed)
    return {"removed": removed}


@app.get("/api/calendar/{year}/{month}")
def calendar_month(year: int, month: int, db: Session = Depends(get_db)):
    ensure_valid_month(year, month)
    summary = month_summary(db, year, month)
    summary["month_name"] = calendar.month_name[month]
    return summary


@app.post("/api/calendar/{year}/{month}/holidays/{day}")
def calendar_toggle_holiday(
    year: int,
    month: int,
    day: int,
    pin: str = Form(""),
    db: Session = Depends(get_db),
):
    ensure_valid_month(year, month)
    try:
        summary = toggle_holiday(db, year, month, day, admin=is_admin_pin(pin))
        db.commit()
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not save holiday.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while saving holidays")
        raise HTTPException(status_code=500, detail="Unexpected database error.") from exc
    return summary


@app.post("/api/calendar/{year}/{month}/lock")
def calendar_lock(year: int, month: int, db: Session = Depends(get_db)):
    ensure_valid_month(year, month)
    try:
        summary = set_locked(db, year, month, True)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while locking month")
        raise HTTPException(status_code=500, detail="Unexpected database error.") from exc
    return summary


@app.post("/api/calendar/{year}/{month}/unlock")
def calendar_unlock(year: int, month: int, pin: str = Form(""), db: Session = Depends(get_db)):
    ensure_valid_month(year, month)
    require_admin(pin)
    try:
        summary = set_locked(db, year, month, False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while unlocking month")
        raise HTTPException(status_code=500, detail="Unexpected database error.") from exc
    return summary
