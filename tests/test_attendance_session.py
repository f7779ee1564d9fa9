"""Session state: local edits, override locks, stale-load discarding and key changes."""

import asyncio
from datetime import date

import pytest

from conftest import CLASS_ID, envelope
from portal.api.v1.attendance.fetchers import Roster, SignalSet
from portal.api.v1.attendance.schemas import SessionKey, Student
from portal.api.v1.attendance.service import (
    AttendanceSession,
    SessionRegistry,
    SessionSnapshot,
    SessionViewModelBuilder,
)
from portal.core.enums import AttendanceStatus
from portal.core.exceptions import SessionNotFoundError, StatusLockedError, UnknownStudentError


@pytest.fixture()
async def loaded_session(erp_client, session_key) -> AttendanceSession:
    session = AttendanceSession("sess-1", session_key)
    await session.refresh(SessionViewModelBuilder(erp_client), refetch_roster=True)
    return session


@pytest.mark.asyncio
async def test_manual_edit_changes_resolved_status(loaded_session) -> None:
    loaded_session.set_status("S3", AttendanceStatus.late)
    s3 = next(vm for vm in loaded_session.view_models() if vm.student.id == "S3")
    assert s3.resolved.status == AttendanceStatus.late
    assert loaded_session.has_unsaved_changes is True


@pytest.mark.asyncio
async def test_override_blocks_contradicting_edit(loaded_session) -> None:
    with pytest.raises(StatusLockedError):
        loaded_session.set_status("S2", AttendanceStatus.present)


@pytest.mark.asyncio
async def test_reselecting_override_value_is_noop(loaded_session) -> None:
    loaded_session.set_status("S2", AttendanceStatus.excused)
    assert "S2" not in loaded_session.manual
    assert loaded_session.has_unsaved_changes is False


@pytest.mark.asyncio
async def test_reselecting_saved_value_is_noop(loaded_session) -> None:
    # S1 already has a saved "absent"
    loaded_session.set_status("S1", AttendanceStatus.absent)
    assert loaded_session.has_unsaved_changes is False
    loaded_session.set_status("S1", AttendanceStatus.late)
    assert loaded_session.has_unsaved_changes is True


@pytest.mark.asyncio
async def test_edit_for_unknown_student(loaded_session) -> None:
    with pytest.raises(UnknownStudentError):
        loaded_session.set_status("S99", AttendanceStatus.absent)


@pytest.mark.asyncio
async def test_view_is_name_ordered_and_filter_keeps_order(loaded_session) -> None:
    names = [vm.student.display_name for vm in loaded_session.view()]
    assert names == ["Lê Văn An", "Nguyễn Văn An", "Trần Thị Bình", "Phạm Minh"]

    filtered = [vm.student.display_name for vm in loaded_session.view("an")]
    assert filtered == ["Lê Văn An", "Nguyễn Văn An"]
    assert [vm.student.id for vm in loaded_session.view("hs002")] == ["S2"]


@pytest.mark.asyncio
async def test_refresh_replaces_local_edits(loaded_session, erp_client, fake_erp) -> None:
    loaded_session.set_status("S3", AttendanceStatus.late)
    fake_erp.responses["get_class_attendance"] = envelope([{"student_id": "S4", "status": "absent"}])
    await loaded_session.refresh(SessionViewModelBuilder(erp_client))
    assert loaded_session.manual == {"S4": "absent"}
    assert loaded_session.has_unsaved_changes is False


@pytest.mark.asyncio
async def test_refresh_reuses_cached_roster(loaded_session, erp_client, fake_erp) -> None:
    before = len(fake_erp.requests_to("get_all_class_students"))
    await loaded_session.refresh(SessionViewModelBuilder(erp_client))
    assert len(fake_erp.requests_to("get_all_class_students")) == before
    await loaded_session.refresh(SessionViewModelBuilder(erp_client), refetch_roster=True)
    assert len(fake_erp.requests_to("get_all_class_students")) == before + 1


class GatedBuilder:
    """Builder whose loads finish only when released, in any order."""

    def __init__(self) -> None:
        self.gates = []

    async def load(self, key, roster=None):
        gate = asyncio.Event()
        marker = len(self.gates)
        self.gates.append(gate)
        await gate.wait()
        roster = Roster(key.class_id, [Student(id=f"S{marker}", code="", display_name=f"Học sinh {marker}")])
        return SessionSnapshot(key, key.class_id, roster, SignalSet(manual={f"S{marker}": "late"}))


@pytest.mark.asyncio
async def test_stale_load_is_discarded() -> None:
    key = SessionKey(class_id=CLASS_ID, date=date(2026, 10, 16), period="homeroom")
    session = AttendanceSession("sess-2", key)
    builder = GatedBuilder()

    older = asyncio.create_task(session.refresh(builder))
    await asyncio.sleep(0)
    newer = asyncio.create_task(session.refresh(builder))
    await asyncio.sleep(0)

    builder.gates[1].set()
    assert await newer is True
    builder.gates[0].set()
    assert await older is False

    assert session.snapshot.roster.ids == ["S1"]
    assert session.manual == {"S1": "late"}


@pytest.mark.asyncio
async def test_key_change_discards_in_flight_load() -> None:
    key = SessionKey(class_id=CLASS_ID, date=date(2026, 10, 16), period="homeroom")
    session = AttendanceSession("sess-3", key)
    builder = GatedBuilder()

    pending = asyncio.create_task(session.refresh(builder))
    await asyncio.sleep(0)
    session.change_key(SessionKey(class_id=CLASS_ID, date=date(2026, 10, 16), period="TT-COL-3"))
    builder.gates[0].set()

    assert await pending is False
    assert session.snapshot is None
    assert session.key.period == "TT-COL-3"


@pytest.mark.asyncio
async def test_registry_open_get_close(erp_client, session_key) -> None:
    registry = SessionRegistry()
    session = await registry.open(session_key, SessionViewModelBuilder(erp_client))
    assert registry.get(session.id) is session
    registry.close(session.id)
    with pytest.raises(SessionNotFoundError):
        registry.get(session.id)
    assert len(registry) == 0


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_idle_session_expires(erp_client, session_key) -> None:
    clock = FakeClock()
    registry = SessionRegistry(idle_seconds=60, clock=clock)
    session = await registry.open(session_key, SessionViewModelBuilder(erp_client))

    clock.now += 59
    assert registry.get(session.id) is session

    # Access resets the idle timer
    clock.now += 59
    assert registry.get(session.id) is session

    clock.now += 61
    with pytest.raises(SessionNotFoundError) as exc:
        registry.get(session.id)
    assert exc.value.status_code == 404
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_opening_drops_idle_sessions(erp_client, session_key) -> None:
    clock = FakeClock()
    registry = SessionRegistry(idle_seconds=60, clock=clock)
    builder = SessionViewModelBuilder(erp_client)
    stale = await registry.open(session_key, builder)

    clock.now += 120
    fresh = await registry.open(session_key, builder)
    assert len(registry) == 1
    assert registry.get(fresh.id) is fresh
    with pytest.raises(SessionNotFoundError):
        registry.get(stale.id)
