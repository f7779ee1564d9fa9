from enum import Enum


class AttendanceStatus(str, Enum):
    present = "present"
    absent = "absent"
    late = "late"
    excused = "excused"


class OverrideKind(str, Enum):
    event = "event"
    leave = "leave"


HOMEROOM_PERIOD = "homeroom"
