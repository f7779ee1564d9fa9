"""Attendance session engine: build per-student views, apply local edits, save the whole roster."""

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from fastapi import status

from portal.core.config import settings
from portal.core.enums import AttendanceStatus, OverrideKind
from portal.core.exceptions import (
    ErpRequestError,
    ServiceError,
    SessionNotFoundError,
    StatusLockedError,
    UnknownStudentError,
)
from portal.erp.client import ErpClient

from . import ordering, resolver
from .audit import SaveAuditLog
from .fetchers import (
    EventOverrideFetcher,
    LeaveOverrideFetcher,
    ManualAttendanceFetcher,
    PhysicalLogFetcher,
    Roster,
    RosterClient,
    SignalSet,
)
from .schemas import (
    NO_TIME,
    ClassEvent,
    SaveItem,
    SaveResult,
    SessionKey,
    StudentViewModel,
)

logger = logging.getLogger(__name__)

LEAVE_REMARK = "Nghỉ phép"


def format_time(value: Optional[str]) -> str:
    """HH:MM:SS -> HH:MM; missing -> --:--."""
    if not value:
        return NO_TIME
    parts = value.split(":")
    if len(parts) >= 2:
        return f"{parts[0]}:{parts[1]}"
    return value


def build_view_models(roster: Roster, manual: Dict, signals: SignalSet) -> List[StudentViewModel]:
    """One view model per roster student, in roster order. `manual` may carry local edits."""
    view_models = []
    for student in roster.students:
        resolved = resolver.resolve(student.id, manual, signals.event.statuses, signals.leave)
        log = signals.physical.get(roster.code_by_id.get(student.id, ""))
        view_models.append(StudentViewModel(
            student=student,
            resolved=resolved,
            check_in_time=format_time(log.check_in_time) if log else NO_TIME,
            check_out_time=format_time(log.check_out_time) if log else NO_TIME,
            override_badge=resolver.override_badge(resolved),
            allowed_statuses=resolver.allowed_statuses(resolved),
        ))
    return view_models


def order_by_name(view_models: List[StudentViewModel]) -> List[StudentViewModel]:
    return ordering.sort_by_name(view_models, lambda vm: vm.student.display_name)


def filter_view_models(view_models: List[StudentViewModel], search: Optional[str]) -> List[StudentViewModel]:
    """Case-insensitive substring match on name or student code. Keeps input order."""
    query = (search or "").strip().lower()
    if not query:
        return list(view_models)
    return [
        vm for vm in view_models
        if query in vm.student.display_name.lower() or query in vm.student.code.lower()
    ]


class SessionSnapshot:
    """Roster + signals fetched for one key at one point in time."""

    def __init__(self, key: SessionKey, class_title: str, roster: Roster, signals: SignalSet) -> None:
        self.key = key
        self.class_title = class_title
        self.roster = roster
        self.signals = signals

    def view_models(self, manual: Optional[Dict] = None) -> List[StudentViewModel]:
        return build_view_models(self.roster, self.signals.manual if manual is None else manual, self.signals)


class SessionViewModelBuilder:
    """Roster and class context first, then the four signals concurrently."""

    def __init__(self, erp: ErpClient) -> None:
        self.roster_client = RosterClient(erp)
        self.manual = ManualAttendanceFetcher(erp)
        self.event = EventOverrideFetcher(erp)
        self.leave = LeaveOverrideFetcher(erp)
        self.physical = PhysicalLogFetcher(erp)

    async def load(self, key: SessionKey, roster: Optional[Roster] = None) -> SessionSnapshot:
        """Raises RosterUnavailableError when the roster cannot be fetched; signals fail soft."""
        if roster is None:
            roster_result, context = await asyncio.gather(
                self.roster_client.fetch(key.class_id),
                self.roster_client.fetch_context(key.class_id),
                return_exceptions=True,
            )
            if isinstance(roster_result, BaseException):
                raise roster_result
            if isinstance(context, BaseException):
                raise context
            roster = roster_result
        else:
            context = await self.roster_client.fetch_context(key.class_id)

        manual, event, leave, physical = await asyncio.gather(
            self.manual.fetch(key, roster),
            self.event.fetch(key, roster, context.education_stage_id),
            self.leave.fetch(key, roster, context.education_stage_id),
            self.physical.fetch(key, roster),
        )
        logger.info(
            "Loaded %s: %d students, %d manual, %d event, %d leave, %d physical",
            key.label(), len(roster), len(manual), len(event.statuses), len(leave), len(physical),
        )
        return SessionSnapshot(key, context.title, roster, SignalSet(manual, event, leave, physical))

    async def build(self, key: SessionKey) -> List[StudentViewModel]:
        snapshot = await self.load(key)
        return snapshot.view_models()


# ----- Save -----
def _event_for(student_id: str, events: List[ClassEvent]) -> Optional[ClassEvent]:
    for event in events:
        if student_id in event.student_ids:
            return event
    return None


def make_remarks(vm: StudentViewModel, events: List[ClassEvent]) -> Optional[str]:
    kind = vm.resolved.override_kind
    if kind == OverrideKind.event:
        event = _event_for(vm.student.id, events)
        if event is None:
            return None
        if vm.resolved.status == AttendanceStatus.excused:
            return f"Tham gia sự kiện: {event.title}"
        if vm.resolved.status == AttendanceStatus.absent:
            return f"Vắng sự kiện: {event.title}"
        return f"Sự kiện: {event.title}"
    if kind == OverrideKind.leave:
        return LEAVE_REMARK
    return None


class BatchSaveCoordinator:
    """Turn the full roster's resolved state into one overwrite batch. Last write wins per session."""

    # Every batch replaces the session's stored records wholesale
    overwrite = True

    def __init__(self, erp: ErpClient, audit: Optional[SaveAuditLog] = None) -> None:
        self.erp = erp
        self.audit = audit

    def build_items(self, key: SessionKey, view_models: List[StudentViewModel], events: List[ClassEvent]) -> List[SaveItem]:
        return [
            SaveItem(
                student_id=vm.student.id,
                student_code=vm.student.code,
                student_name=vm.student.display_name,
                class_id=key.class_id,
                date=key.date,
                period=key.period,
                status=vm.resolved.status,
                remarks=make_remarks(vm, events),
            )
            for vm in order_by_name(view_models)
        ]

    async def save(self, key: SessionKey, view_models: List[StudentViewModel], events: List[ClassEvent]) -> SaveResult:
        """`view_models` must cover the whole roster, never a filtered subset."""
        items = self.build_items(key, view_models, events)
        payload = [item.model_dump(mode="json", exclude_none=True) for item in items]
        try:
            await self.erp.save_class_attendance(payload, overwrite=self.overwrite)
            result = SaveResult(success=True, item_count=len(items))
        except ErpRequestError as e:
            logger.error("Saving attendance for %s failed: %s", key.label(), e.message)
            result = SaveResult(success=False, item_count=len(items), error=e.message)
        if self.audit is not None:
            await self.audit.record(key, result, overwrite=self.overwrite)
        return result


# ----- Sessions -----
class AttendanceSession:
    """
    State behind one open attendance screen.

    Every load is tagged with a generation number; a load that finishes after a newer
    load or a key change is discarded. Local edits live in `manual` and are replaced
    wholesale by the next successful load.
    """

    def __init__(self, session_id: str, key: SessionKey) -> None:
        self.id = session_id
        self.key = key
        self.snapshot: Optional[SessionSnapshot] = None
        self.manual: Dict[str, str] = {}
        self.has_unsaved_changes = False
        self.last_access = 0.0
        self._generation = 0

    def change_key(self, key: SessionKey) -> None:
        self._generation += 1
        self.key = key
        self.snapshot = None
        self.manual = {}
        self.has_unsaved_changes = False

    async def refresh(self, builder: SessionViewModelBuilder, refetch_roster: bool = False) -> bool:
        """Reload signals (and the roster when asked or not yet cached). False if the result went stale."""
        self._generation += 1
        generation, key = self._generation, self.key
        cached_roster = None
        if self.snapshot is not None and not refetch_roster:
            cached_roster = self.snapshot.roster
        snapshot = await builder.load(key, roster=cached_roster)
        if generation != self._generation or key != self.key:
            logger.info("Discarding stale attendance data for %s (generation %d)", key.label(), generation)
            return False
        self.snapshot = snapshot
        self.manual = dict(snapshot.signals.manual)
        self.has_unsaved_changes = False
        return True

    def _require_snapshot(self) -> SessionSnapshot:
        if self.snapshot is None:
            raise ServiceError("Attendance session has no data loaded yet", status.HTTP_409_CONFLICT)
        return self.snapshot

    def view_models(self) -> List[StudentViewModel]:
        """Full roster, ordered by name."""
        snapshot = self._require_snapshot()
        return order_by_name(snapshot.view_models(self.manual))

    def view(self, search: Optional[str] = None) -> List[StudentViewModel]:
        return filter_view_models(self.view_models(), search)

    def set_status(self, student_id: str, new_status: AttendanceStatus) -> None:
        snapshot = self._require_snapshot()
        if student_id not in snapshot.roster:
            raise UnknownStudentError(student_id)
        current = resolver.resolve(student_id, self.manual, snapshot.signals.event.statuses, snapshot.signals.leave)
        if current.overridden:
            if new_status == current.status:
                return
            raise StatusLockedError(student_id, current.status.value)
        if self.manual.get(student_id) == new_status.value:
            return
        self.manual[student_id] = new_status.value
        self.has_unsaved_changes = True

    async def save(self, coordinator: BatchSaveCoordinator) -> SaveResult:
        snapshot = self._require_snapshot()
        result = await coordinator.save(self.key, self.view_models(), snapshot.signals.event.events)
        if result.success:
            self.has_unsaved_changes = False
        return result


class SessionRegistry:
    """
    In-process store of open attendance sessions.

    Clients may vanish without closing their screen, so a session that has not been
    accessed for `idle_seconds` is dropped and then reads as not found.
    """

    def __init__(self, idle_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: Dict[str, AttendanceSession] = {}
        self.idle_seconds = idle_seconds if idle_seconds is not None else settings.session_idle_seconds
        self._clock = clock

    def _evict_idle(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if now - s.last_access > self.idle_seconds]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Dropped %d idle attendance session(s)", len(expired))

    async def open(self, key: SessionKey, builder: SessionViewModelBuilder) -> AttendanceSession:
        self._evict_idle(self._clock())
        session = AttendanceSession(uuid.uuid4().hex, key)
        await session.refresh(builder, refetch_roster=True)
        session.last_access = self._clock()
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> AttendanceSession:
        now = self._clock()
        self._evict_idle(now)
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.last_access = now
        return session

    def close(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            raise SessionNotFoundError(session_id)

    def __len__(self) -> int:
        return len(self._sessions)
