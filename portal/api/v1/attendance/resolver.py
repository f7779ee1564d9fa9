"""
Resolve one authoritative attendance status per student.
Priority: event override > leave override > manual entry > present.
The first source holding a valid status for the student wins; later sources are not consulted.
Values outside the closed status set count as missing and fall through to the next source.
"""

from typing import Any, List, Mapping, Optional, Tuple

from portal.core.enums import AttendanceStatus, OverrideKind

from .schemas import ResolvedStatus


DEFAULT_STATUS = AttendanceStatus.present

OVERRIDE_BADGES = {
    OverrideKind.event: "Sự kiện",
    OverrideKind.leave: "Nghỉ phép",
}


def normalize_status(value: Any) -> Optional[AttendanceStatus]:
    """Map a raw signal value to a status, or None when it is missing or malformed."""
    if isinstance(value, AttendanceStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return AttendanceStatus(value.strip().lower())
    except ValueError:
        return None


def resolve(
    student_id: str,
    manual: Mapping[str, Any],
    event: Mapping[str, Any],
    leave: Mapping[str, Any],
) -> ResolvedStatus:
    sources: Tuple[Tuple[Mapping[str, Any], Optional[OverrideKind]], ...] = (
        (event, OverrideKind.event),
        (leave, OverrideKind.leave),
        (manual, None),
    )
    for source, kind in sources:
        status = normalize_status(source.get(student_id))
        if status is not None:
            return ResolvedStatus(status=status, overridden=kind is not None, override_kind=kind)
    return ResolvedStatus(status=DEFAULT_STATUS)


def allowed_statuses(resolved: ResolvedStatus) -> List[AttendanceStatus]:
    """Statuses a teacher may select. An override pins the student to its own value."""
    if resolved.overridden:
        return [resolved.status]
    return list(AttendanceStatus)


def override_badge(resolved: ResolvedStatus) -> Optional[str]:
    if resolved.override_kind is None:
        return None
    return OVERRIDE_BADGES[resolved.override_kind]
