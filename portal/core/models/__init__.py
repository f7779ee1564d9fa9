from portal.core.models.attendance_save_log import AttendanceSaveLog
