from datetime import date, datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field

from portal.core.enums import AttendanceStatus, OverrideKind


NO_TIME = "--:--"


class SessionKey(BaseModel):
    """One (class, date, period) attendance-taking unit."""

    class_id: str
    date: date
    period: str = Field(..., description="'homeroom' or a timetable column id")

    class Config:
        frozen = True

    def label(self) -> str:
        return f"{self.class_id}/{self.date.isoformat()}/{self.period}"


class Student(BaseModel):
    """Roster entry. `id` is the roster key; `code` joins against physical logs."""

    id: str
    code: str = ""
    display_name: str = ""


class ClassEvent(BaseModel):
    """Event row as listed by the ERP (camelCase or snake_case keys)."""

    event_id: str = Field(..., validation_alias=AliasChoices("eventId", "event_id"))
    title: str = Field("", validation_alias=AliasChoices("eventTitle", "title"))
    student_ids: List[str] = Field(default_factory=list, validation_alias=AliasChoices("studentIds", "student_ids"))

    class Config:
        populate_by_name = True


class PhysicalLogEntry(BaseModel):
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None


class ResolvedStatus(BaseModel):
    status: AttendanceStatus
    overridden: bool = False
    override_kind: Optional[OverrideKind] = None


class StudentViewModel(BaseModel):
    student: Student
    resolved: ResolvedStatus
    check_in_time: str = NO_TIME
    check_out_time: str = NO_TIME
    override_badge: Optional[str] = None
    allowed_statuses: List[AttendanceStatus] = []


class SaveItem(BaseModel):
    """Persisted shape of one student's attendance for a session."""

    student_id: str
    student_code: str
    student_name: str
    class_id: str
    date: date
    period: str
    status: AttendanceStatus
    remarks: Optional[str] = None


class SaveResult(BaseModel):
    success: bool
    item_count: int
    error: Optional[str] = None


# ----- HTTP payloads -----
class SessionOpenRequest(BaseModel):
    class_id: str
    date: date
    period: str


class StatusUpdateRequest(BaseModel):
    status: AttendanceStatus


class SessionViewResponse(BaseModel):
    """Ordered (and optionally filtered) view of one attendance session."""

    session_id: str
    class_id: str
    class_title: str
    date: date
    period: str
    total: int
    visible: int
    has_unsaved_changes: bool
    students: List[StudentViewModel]


class SaveLogRecord(BaseModel):
    """One recorded save attempt."""

    id: str
    class_id: str
    attendance_date: date
    period: str
    item_count: int
    overwrite: bool
    success: bool
    error: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
