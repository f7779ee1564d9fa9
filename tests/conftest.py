import json
import os
from datetime import date
from typing import Any, AsyncGenerator, Dict, List, Set, Tuple

os.environ.setdefault("ERP_BASE_URL", "http://erp.test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal.api.v1.attendance.schemas import SessionKey
from portal.db.session import Base, get_db
from portal.erp.client import ErpClient
from portal.main import create_app


CLASS_ID = "SIS-CLASS-10A1"
TODAY = date(2026, 10, 16)

STUDENTS = [
    {"name": "S1", "student_code": "HS001", "student_name": "Nguyễn Văn An"},
    {"name": "S2", "student_code": "HS002", "student_name": "Trần Thị Bình"},
    {"name": "S3", "student_code": "HS003", "student_name": "Lê Văn An"},
    {"name": "S4", "student_code": "", "student_name": "Phạm Minh"},
]


def envelope(data: Any) -> Dict[str, Any]:
    return {"message": {"data": data}}


class FakeErp:
    """
    Stand-in for the ERP behind an httpx.MockTransport.
    Calls are routed by the last dotted segment of the method path.
    """

    def __init__(self) -> None:
        self.responses: Dict[str, Any] = {}
        self.failing: Set[str] = set()
        self.calls: List[Tuple[str, httpx.Request]] = []
        # Stored attendance per (class_id, date, period); overwrite replaces it wholesale.
        self.saved: Dict[Tuple[str, str, str], List[Dict[str, Any]]] = {}
        self.save_payloads: List[Dict[str, Any]] = []
        self._load_defaults()

    def _load_defaults(self) -> None:
        self.responses.update({
            "get_class": envelope({
                "name": CLASS_ID,
                "short_title": "10A1",
                "education_grade": "GRADE-10",
            }),
            "get_education_stage": envelope({"education_stage_id": "STAGE-THPT"}),
            "get_all_class_students": {"data": {"data": [{"student_id": s["name"]} for s in STUDENTS]}},
            "batch_get_students": envelope(list(STUDENTS)),
            "get_class_attendance": envelope([{"student_id": "S1", "status": "absent"}]),
            "get_event_attendance_statuses": envelope({"S2": "excused"}),
            "get_events_by_class_period": envelope([
                {"eventId": "EV-1", "eventTitle": "Hội khỏe Phù Đổng", "studentIds": ["S2"]},
            ]),
            "batch_get_active_leaves": envelope({}),
            "get_students_day_map": envelope({
                "HS001": {"checkInTime": "07:05:12", "checkOutTime": "16:30:45"},
                "HS003": {"checkInTime": "07:15:00"},
            }),
            "save_class_attendance": self._save,
        })

    def _save(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.save_payloads.append(body)
        items = body["items"]
        for item in items:
            key = (item["class_id"], item["date"], item["period"])
            if body.get("overwrite"):
                self.saved[key] = []
        for item in items:
            self.saved[(item["class_id"], item["date"], item["period"])].append(item)
        return httpx.Response(200, json={"success": True, "message": f"Saved {len(items)} records"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit(".", 1)[-1]
        self.calls.append((name, request))
        if name in self.failing:
            return httpx.Response(500, text="Internal Server Error")
        response = self.responses.get(name)
        if response is None:
            return httpx.Response(404, json={"exc_type": "DoesNotExistError"})
        if callable(response):
            return response(request)
        return httpx.Response(200, json=response)

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def requests_to(self, name: str) -> List[httpx.Request]:
        return [request for call, request in self.calls if call == name]


@pytest.fixture()
def fake_erp() -> FakeErp:
    return FakeErp()


def make_http(fake_erp: FakeErp) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_erp.handler), base_url="http://erp.test")


@pytest.fixture()
async def erp_client(fake_erp: FakeErp) -> AsyncGenerator[ErpClient, None]:
    async with make_http(fake_erp) as http:
        yield ErpClient(http, "Bearer test-token")


@pytest.fixture()
def session_key() -> SessionKey:
    return SessionKey(class_id=CLASS_ID, date=TODAY, period="homeroom")


@pytest.fixture()
async def audit_sessionmaker(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Save audit store in a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}", echo=False, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
async def client(fake_erp: FakeErp, audit_sessionmaker: async_sessionmaker) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to a fresh app wired to the fake ERP."""
    app = create_app()
    async with make_http(fake_erp) as http:
        app.state.erp_http = http
        app.state.db_sessionmaker = audit_sessionmaker

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            async with audit_sessionmaker() as session:
                yield session

        app.dependency_overrides[get_db] = override_get_db
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            headers={"Authorization": "Bearer test-token"},
        ) as ac:
            yield ac

