from datetime import datetime
from pathlib import Path
from io import BytesIO
import sys

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker

try:
    from openpyxl import Workbook
except Exception:
    Workbook = None

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import main
from app.database import Base

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture()
def client_and_engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def register_now(dbapi_conn, _):
        dbapi_conn.create_function("NOW", 0, lambda: datetime.utcnow().isoformat(sep=" "))

    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = SessionTesting()
        try:
            yield db
        finally:
            db.close()

    original_startup = list(main.app.router.on_startup)
    original_shutdown = list(main.app.router.on_shutdown)
    original_lifespan = main.app.router.lifespan_context

    async def _noop_lifespan(_app):
        yield

    main.app.router.on_startup = []
    main.app.router.on_shutdown = []
    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db

    client = TestClient(main.app)
    try:
        yield client, engine
    finally:
        client.close()
        main.app.dependency_overrides.clear()
        main.app.router.on_startup = original_startup
        main.app.router.on_shutdown = original_shutdown
        main.app.router.lifespan_context = original_lifespan
        engine.dispose()


def seed_record(engine, department: str, report_date: str, metric: str, actual: float = 1):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO performance_records
                  (department, team, metric, plan, actual, variance, unit, status, report_date, created_at)
                VALUES
                  (:department, 'Achievers', :metric, 0, :actual, 0, 'Units', 'on-track', :report_date, NOW())
                """
            ),
            {"department": department, "report_date": report_date, "metric": metric, "actual": actual},
        )


def record_count(engine, department: str | None = None) -> int:
    with engine.begin() as conn:
        return conn.execute(
            text(
                "SELECT COUNT(*) FROM performance_records WHERE (:department IS NULL OR department = :department)"
            ),
            {"department": department},
        ).scalar_one()


def _build_daily_workbook_bytes() -> bytes:
    if Workbook is None:
        pytest.skip("openpyxl is not installed in this test environment")

    wb = Workbook()
    sales = wb.active
    sales.title = "Daily Sales"
    sales.append(["", "1/1/2024", "2/1/2024"])
    sales.append(["ACHIEVERS"])
    sales.append(["Product A", 100, 150])
    sales.append(["TOTAL SALES", 100, 150])
    sales.append(["PASSIONATE"])
    sales.append(["Product B", "1,250", 0])

    out = BytesIO()
    wb.save(out)
    return out.getvalue()


def _build_master_workbook_bytes() -> bytes:
    if Workbook is None:
        pytest.skip("openpyxl is not installed in this test environment")

    wb = Workbook()
    plan = wb.active
    plan.title = "Sales Plan"
    plan.append(["Row Labels", "TGT"])
    plan.append(["DYNAMIC"])
    plan.append(["Product A", 500])

    out = BytesIO()
    wb.save(out)
    return out.getvalue()


def _post_workbook(client, content: bytes, **form):
    data = {"mode": "daily", "year": "2024", "month": "1", "days": "1"}
    data.update(form)
    return client.post(
        "/import/workbook",
        data=data,
        files={"workbook_file": ("daily.xlsx", content, XLSX_MIME)},
    )


def test_import_workbook_persists_daily_records(client_and_engine):
    client, engine = client_and_engine

    response = _post_workbook(client, _build_daily_workbook_bytes(), days="1,2")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["records_imported"] == 3
    assert body["dates_touched"] == 2
    assert body["message"] == "Imported 3 items across 2 dates."

    listing = client.get("/api/records", params={"report_date": "January 01, 2024"}).json()
    assert [(r["team"], r["metric"], r["actual"]) for r in listing["records"]] == [
        ("Achievers", "Product A", 100.0),
        ("Passionate", "Product B", 1250.0),
    ]


def test_import_workbook_reimport_replaces_same_day(client_and_engine):
    client, engine = client_and_engine
    seed_record(engine, "Sales", "January 01, 2024", "Stale Product")
    seed_record(engine, "Sales", "January 02, 2024", "Other Day")
    seed_record(engine, "Territory Sales", "January 01, 2024", "Territory Row")
    workbook_bytes = _build_daily_workbook_bytes()

    first = _post_workbook(client, workbook_bytes)
    second = _post_workbook(client, workbook_bytes)

    assert first.status_code == 200
    assert first.json()["records_replaced"] == 1
    assert second.json()["records_replaced"] == 2

    with engine.begin() as conn:
        metrics = conn.execute(
            text(
                "SELECT metric FROM performance_records WHERE department = 'Sales' "
                "AND report_date = 'January 01, 2024' ORDER BY metric"
            )
        ).scalars().all()
    assert metrics == ["Product A", "Product B"]
    assert record_count(engine) == 4


def test_import_workbook_preview_does_not_commit(client_and_engine):
    client, engine = client_and_engine

    response = _post_workbook(client, _build_daily_workbook_bytes(), import_mode="preview")

    assert response.status_code == 200
    assert response.json()["preview"] is True
    assert len(response.json()["new_records"]) == 2
    assert record_count(engine) == 0


def test_import_workbook_master_plan(client_and_engine):
    client, engine = client_and_engine
    workbook_bytes = _build_master_workbook_bytes()

    _post_workbook(client, workbook_bytes, mode="master", days="")
    response = _post_workbook(client, workbook_bytes, mode="master", days="")

    assert response.status_code == 200
    assert response.json()["report_dates"] == ["MASTER_January_2024"]
    records = client.get("/api/records", params={"department": "Sales"}).json()["records"]
    assert len(records) == 1
    assert records[0]["plan"] == 500.0
    assert records[0]["team"] == "Dynamic"


def test_import_workbook_no_matching_columns_keeps_existing_data(client_and_engine):
    client, engine = client_and_engine
    seed_record(engine, "Sales", "January 05, 2024", "Keep Me")

    response = _post_workbook(client, _build_daily_workbook_bytes(), days="5,6")

    assert response.status_code == 422
    body = response.json()
    assert body["ok"] is False
    assert body["error_kind"] == "no_matching_columns"
    assert "(5, 6)" in body["message"]
    assert record_count(engine) == 1


def test_import_workbook_rejects_unsupported_file(client_and_engine):
    client, _ = client_and_engine

    response = client.post(
        "/import/workbook",
        data={"mode": "daily", "year": "2024", "month": "1", "days": "1"},
        files={"workbook_file": ("daily.csv", b"a,b", "text/csv")},
    )

    assert response.status_code == 400
    assert "xlsx" in response.json()["detail"]


def test_import_workbook_rejects_invalid_day_list(client_and_engine):
    client, _ = client_and_engine

    response = _post_workbook(client, _build_daily_workbook_bytes(), days="1,x")

    assert response.status_code == 400


def test_report_dates_lists_groups(client_and_engine):
    client, engine = client_and_engine
    seed_record(engine, "Sales", "January 01, 2024", "A")
    seed_record(engine, "Sales", "January 01, 2024", "B")
    seed_record(engine, "Territory Sales", "January 02, 2024", "C")

    body = client.get("/api/report-dates", params={"department": "Sales"}).json()

    assert body["report_dates"] == [
        {"department": "Sales", "report_date": "January 01, 2024", "record_count": 2}
    ]


def test_reset_requires_admin_pin(client_and_engine):
    client, engine = client_and_engine
    seed_record(engine, "Sales", "January 01, 2024", "A")

    denied = client.post("/api/records/reset", data={"pin": "000"})
    assert denied.status_code == 403
    assert record_count(engine) == 1

    allowed = client.post("/api/records/reset", data={"pin": "786"})
    assert allowed.status_code == 200
    assert allowed.json()["removed"] == 1
    assert record_count(engine) == 0


def test_calendar_defaults_to_sundays(client_and_engine):
    client, _ = client_and_engine

    body = client.get("/api/calendar/2024/1").json()

    assert body["month_key"] == "2024-01"
    assert body["month_name"] == "January"
    assert body["holidays"] == [7, 14, 21, 28]
    assert body["holidays_customized"] is False
    assert body["working_day_count"] == 27
    assert body["locked"] is False


def test_calendar_toggle_respects_lock(client_and_engine):
    client, _ = client_and_engine

    toggled = client.post("/api/calendar/2024/1/holidays/1")
    assert toggled.status_code == 200
    assert toggled.json()["holidays"] == [1, 7, 14, 21, 28]

    assert client.post("/api/calendar/2024/1/lock").json()["locked"] is True

    blocked = client.post("/api/calendar/2024/1/holidays/7")
    assert blocked.status_code == 403

    override = client.post("/api/calendar/2024/1/holidays/7", data={"pin": "786"})
    assert override.status_code == 200
    assert override.json()["holidays"] == [1, 14, 21, 28]
    assert override.json()["locked"] is True


def test_calendar_unlock_requires_admin_pin(client_and_engine):
    client, _ = client_and_engine
    client.post("/api/calendar/2024/2/lock")

    assert client.post("/api/calendar/2024/2/unlock").status_code == 403
    unlocked = client.post("/api/calendar/2024/2/unlock", data={"pin": "786"})
    assert unlocked.status_code == 200
    assert unlocked.json()["locked"] is False


def test_daily_import_without_days_uses_working_days(client_and_engine):
    client, _ = client_and_engine
    client.post("/api/calendar/2024/1/holidays/1")

    response = _post_workbook(client, _build_daily_workbook_bytes(), days="")

    assert response.status_code == 200
    assert response.json()["report_dates"] == ["January 02, 2024"]
