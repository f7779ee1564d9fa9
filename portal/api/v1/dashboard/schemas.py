from datetime import date
from typing import List, Optional

from pydantic import BaseModel


class DashboardClass(BaseModel):
    """One attendance unit on a teacher's day: a homeroom class or a timetable period."""

    class_id: str
    class_title: str
    period: str
    is_homeroom: bool
    subject_title: Optional[str] = None

    @property
    def stats_key(self) -> str:
        if self.is_homeroom:
            return self.class_id
        return f"{self.class_id}_{self.period}"


class ClassStats(BaseModel):
    check_in_count: int = 0
    attendance_count: int = 0
    check_out_count: int = 0
    total_students: int = 0
    has_attendance: bool = False
    present_count: int = 0
    absent_count: int = 0
    late_count: int = 0
    excused_count: int = 0
    overridden_count: int = 0


class DashboardEntry(BaseModel):
    stats_key: str
    class_id: str
    class_title: str
    period: str
    is_homeroom: bool
    subject_title: Optional[str] = None
    stats: ClassStats
    error: Optional[str] = None


class DashboardResponse(BaseModel):
    date: date
    teacher_user_id: str
    classes: List[DashboardEntry]
