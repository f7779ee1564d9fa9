"""
Teacher dashboard: list the day's classes and compute attendance counts for each.

Each class runs the same session pipeline as the detail screen. Pipelines run through a
bounded worker pool; a failing class reports zero counts without affecting the others.
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from fastapi import status

from portal.api.v1.attendance.fetchers import format_class_title
from portal.api.v1.attendance.resolver import normalize_status
from portal.api.v1.attendance.schemas import NO_TIME, SessionKey
from portal.api.v1.attendance.service import SessionViewModelBuilder
from portal.core.config import settings
from portal.core.enums import HOMEROOM_PERIOD, AttendanceStatus
from portal.core.exceptions import ErpRequestError, ServiceError
from portal.erp.client import ErpClient

from .schemas import ClassStats, DashboardClass, DashboardEntry

logger = logging.getLogger(__name__)


def week_range(day: date) -> Tuple[date, date]:
    """Monday..Sunday of the week containing `day`."""
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def _homeroom_classes(classes_data: Dict[str, Any]) -> List[DashboardClass]:
    result: Dict[str, DashboardClass] = {}
    for cls in classes_data.get("homeroom_classes") or []:
        if not isinstance(cls, dict):
            continue
        class_id = cls.get("class_id") or cls.get("name")
        if not class_id or class_id in result:
            continue
        result[class_id] = DashboardClass(
            class_id=str(class_id),
            class_title=format_class_title(str(class_id), cls),
            period=HOMEROOM_PERIOD,
            is_homeroom=True,
        )
    return list(result.values())


def _timetable_classes(entries: List[Dict[str, Any]], day: date) -> List[DashboardClass]:
    result = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("date") != day.isoformat():
            continue
        if not entry.get("class_id") or not entry.get("timetable_column_id"):
            continue
        result.append(DashboardClass(
            class_id=str(entry["class_id"]),
            class_title=str(entry.get("class_title") or format_class_title(str(entry["class_id"]))),
            period=str(entry["timetable_column_id"]),
            is_homeroom=False,
            subject_title=entry.get("subject_title"),
        ))
    return result


async def list_teacher_classes(
    erp: ErpClient,
    teacher_user_id: str,
    day: date,
    education_stage: Optional[str] = None,
    teacher_id: Optional[str] = None,
) -> List[DashboardClass]:
    """Homeroom classes plus the day's timetable periods. A missing timetable is not fatal."""
    week_start, week_end = week_range(day)
    classes_data, week = await asyncio.gather(
        erp.get_teacher_classes(teacher_user_id),
        erp.get_teacher_week(teacher_id or teacher_user_id, week_start, week_end, education_stage),
        return_exceptions=True,
    )
    if isinstance(classes_data, ErpRequestError):
        raise ServiceError(f"Could not load classes for teacher: {classes_data.message}", status.HTTP_502_BAD_GATEWAY)
    if isinstance(classes_data, BaseException):
        raise classes_data
    if isinstance(week, ErpRequestError):
        logger.warning("Timetable unavailable for teacher %s: %s", teacher_user_id, week.message)
        week = []
    elif isinstance(week, BaseException):
        raise week
    return _homeroom_classes(classes_data) + _timetable_classes(week, day)


class DashboardAggregator:
    def __init__(self, builder: SessionViewModelBuilder, max_concurrency: Optional[int] = None) -> None:
        self.builder = builder
        self.max_concurrency = max(1, max_concurrency or settings.dashboard_max_concurrency)

    async def class_stats(self, key: SessionKey) -> ClassStats:
        snapshot = await self.builder.load(key)
        roster = snapshot.roster
        stats = ClassStats(total_students=len(roster))

        # Only records of students still in the class count, so counts never exceed the roster.
        for student_id, raw in snapshot.signals.manual.items():
            if student_id not in roster:
                continue
            saved = normalize_status(raw)
            if saved is None:
                continue
            stats.attendance_count += 1
            if saved == AttendanceStatus.present:
                stats.present_count += 1
            elif saved == AttendanceStatus.absent:
                stats.absent_count += 1
            elif saved == AttendanceStatus.late:
                stats.late_count += 1
            elif saved == AttendanceStatus.excused:
                stats.excused_count += 1
        stats.has_attendance = stats.attendance_count > 0

        for vm in snapshot.view_models():
            if vm.check_in_time != NO_TIME:
                stats.check_in_count += 1
            if vm.check_out_time != NO_TIME:
                stats.check_out_count += 1
            if vm.resolved.overridden:
                stats.overridden_count += 1
        return stats

    async def aggregate(self, classes: List[DashboardClass], day: date) -> List[DashboardEntry]:
        """Entries come back in the order of `classes`."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(cls: DashboardClass) -> DashboardEntry:
            entry = DashboardEntry(
                stats_key=cls.stats_key,
                class_id=cls.class_id,
                class_title=cls.class_title,
                period=cls.period,
                is_homeroom=cls.is_homeroom,
                subject_title=cls.subject_title,
                stats=ClassStats(),
            )
            async with semaphore:
                try:
                    entry.stats = await self.class_stats(SessionKey(class_id=cls.class_id, date=day, period=cls.period))
                except ServiceError as e:
                    logger.warning("Stats unavailable for %s: %s", entry.stats_key, e.message)
                    entry.error = e.message
                except Exception as e:
                    logger.exception("Stats failed for %s", entry.stats_key)
                    entry.error = str(e) or type(e).__name__
            return entry

        return list(await asyncio.gather(*(run(cls) for cls in classes)))
