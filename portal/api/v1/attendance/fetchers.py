"""
Roster loading and the four attendance signal sources.

The roster is fatal when it cannot be loaded. Every signal fetcher is fail-soft:
an ERP error or malformed payload degrades that signal to an empty value.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from portal.core.config import settings
from portal.core.enums import AttendanceStatus
from portal.core.exceptions import ErpRequestError, ErpResponseError, RosterUnavailableError
from portal.erp.client import ErpClient

from .schemas import ClassEvent, PhysicalLogEntry, SessionKey, Student

logger = logging.getLogger(__name__)


class Roster:
    """Students of one class plus the id<->code join table, built once per fetch."""

    def __init__(self, class_id: str, students: List[Student]) -> None:
        self.class_id = class_id
        self.students = students
        self.by_id: Dict[str, Student] = {s.id: s for s in students}
        self.code_by_id: Dict[str, str] = {s.id: s.code for s in students if s.code}
        self.id_by_code: Dict[str, str] = {code: sid for sid, code in self.code_by_id.items()}

    @property
    def ids(self) -> List[str]:
        return [s.id for s in self.students]

    @property
    def codes(self) -> List[str]:
        return list(self.id_by_code)

    def __len__(self) -> int:
        return len(self.students)

    def __contains__(self, student_id: str) -> bool:
        return student_id in self.by_id


@dataclass
class ClassContext:
    title: str
    education_stage_id: Optional[str] = None


@dataclass
class EventSignal:
    statuses: Dict[str, Any] = field(default_factory=dict)
    events: List[ClassEvent] = field(default_factory=list)


@dataclass
class SignalSet:
    manual: Dict[str, Any] = field(default_factory=dict)
    event: EventSignal = field(default_factory=EventSignal)
    leave: Dict[str, Any] = field(default_factory=dict)
    physical: Dict[str, PhysicalLogEntry] = field(default_factory=dict)


def _student_from_record(rec: Dict[str, Any]) -> Optional[Student]:
    sid = rec.get("name") or rec.get("student_id")
    if not sid:
        return None
    return Student(
        id=str(sid),
        code=str(rec.get("student_code") or ""),
        display_name=str(rec.get("student_name") or rec.get("full_name") or ""),
    )


def _as_time(value: Any) -> Optional[str]:
    return str(value) if value else None


def format_class_title(class_id: str, info: Optional[Dict[str, Any]] = None) -> str:
    """short_title > title > class_name > id without its SIS-CLASS-/CLASS- prefix."""
    info = info or {}
    for field_name in ("short_title", "title", "class_name"):
        if info.get(field_name):
            return str(info[field_name])
    return re.sub(r"^(SIS-CLASS-|CLASS-)", "", str(class_id))


class RosterClient:
    def __init__(self, erp: ErpClient, page_limit: Optional[int] = None) -> None:
        self.erp = erp
        self.page_limit = page_limit or settings.roster_page_limit

    async def fetch(self, class_id: str) -> Roster:
        """Student ids of the class, hydrated in one batch call. Order follows the class listing."""
        try:
            student_ids = await self.erp.get_class_students(class_id, 1, self.page_limit)
            if not student_ids:
                return Roster(class_id, [])
            records = await self.erp.batch_get_students(student_ids)
        except ErpRequestError as e:
            raise RosterUnavailableError(class_id, e.message)

        hydrated: Dict[str, Student] = {}
        for rec in records:
            student = _student_from_record(rec) if isinstance(rec, dict) else None
            if student is not None:
                hydrated[student.id] = student
        students: List[Student] = []
        for sid in dict.fromkeys(student_ids):
            if sid in hydrated:
                students.append(hydrated[sid])
        if len(students) < len(set(student_ids)):
            logger.warning(
                "Class %s: %d of %d students could not be hydrated",
                class_id, len(set(student_ids)) - len(students), len(set(student_ids)),
            )
        return Roster(class_id, students)

    async def fetch_context(self, class_id: str) -> ClassContext:
        """Class title and education stage (class -> grade -> stage). Never raises."""
        try:
            info = await self.erp.get_class_info(class_id)
        except ErpRequestError as e:
            logger.warning("Class info unavailable for %s: %s", class_id, e.message)
            return ClassContext(title=format_class_title(class_id))
        context = ClassContext(title=format_class_title(class_id, info))
        grade = info.get("education_grade")
        if grade:
            try:
                stage = await self.erp.get_education_stage(str(grade))
                context.education_stage_id = stage.get("education_stage_id") or None
            except ErpRequestError as e:
                logger.warning("Education stage unavailable for grade %s: %s", grade, e.message)
        return context


# ----- Signal fetchers -----
class SignalFetcher:
    """
    Base for fail-soft fetchers. `_fetch` may raise; `fetch` turns ERP errors and
    payloads that do not parse into the empty signal.
    """

    source = "signal"

    def __init__(self, erp: ErpClient) -> None:
        self.erp = erp

    def empty(self) -> Any:
        return {}

    async def fetch(self, key: SessionKey, roster: Roster, education_stage_id: Optional[str] = None) -> Any:
        try:
            return await self._fetch(key, roster, education_stage_id)
        except ErpRequestError as e:
            error = e
        except (ValidationError, TypeError, ValueError, AttributeError) as e:
            # 200 answer whose inner rows do not parse
            error = ErpResponseError(f"unexpected {self.source} payload: {e}")
        logger.warning("%s signal unavailable for %s: %s", self.source, key.label(), error.message)
        return self.empty()

    async def _fetch(self, key: SessionKey, roster: Roster, education_stage_id: Optional[str]) -> Any:
        raise NotImplementedError


class ManualAttendanceFetcher(SignalFetcher):
    """Previously saved statuses for the session, keyed by student id."""

    source = "manual"

    async def _fetch(self, key, roster, education_stage_id):
        rows = await self.erp.get_class_attendance(key.class_id, key.date, key.period)
        statuses: Dict[str, Any] = {}
        for row in rows:
            if isinstance(row, dict) and row.get("student_id") and row.get("status"):
                statuses[str(row["student_id"])] = row["status"]
        return statuses


class EventOverrideFetcher(SignalFetcher):
    """Event statuses and the event list (for remarks). Needs the class's education stage."""

    source = "event"

    def empty(self) -> EventSignal:
        return EventSignal()

    async def _fetch(self, key, roster, education_stage_id):
        if not education_stage_id:
            return EventSignal()
        statuses, raw_events = await asyncio.gather(
            self.erp.get_event_attendance_statuses(key.class_id, key.date, key.period, education_stage_id),
            self.erp.get_events_by_class_period(key.class_id, key.date, key.period, education_stage_id),
        )
        events = [ClassEvent.model_validate(raw) for raw in raw_events]
        return EventSignal(statuses={str(k): v for k, v in statuses.items()}, events=events)


class LeaveOverrideFetcher(SignalFetcher):
    """Approved leave for the date. Any student on leave resolves to excused."""

    source = "leave"

    async def _fetch(self, key, roster, education_stage_id):
        leaves = await self.erp.get_active_leaves(key.class_id, key.date)
        return {str(student_id): AttendanceStatus.excused.value for student_id in leaves}


class PhysicalLogFetcher(SignalFetcher):
    """Check-in/out times by student code. Display and dashboard counts only."""

    source = "physical"

    async def _fetch(self, key, roster, education_stage_id):
        codes = roster.codes
        if not codes:
            return {}
        day_map = await self.erp.get_students_day_map(codes, key.date)
        entries: Dict[str, PhysicalLogEntry] = {}
        for code, raw in day_map.items():
            if not isinstance(raw, dict):
                continue
            entries[str(code)] = PhysicalLogEntry(
                check_in_time=_as_time(raw.get("checkInTime") or raw.get("check_in_time")),
                check_out_time=_as_time(raw.get("checkOutTime") or raw.get("check_out_time")),
            )
        return entries
