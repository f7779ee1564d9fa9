from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ErpRequestError(ServiceError):
    """The ERP could not be reached or answered with an error."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)


class ErpResponseError(ErpRequestError):
    """The ERP answered, but not with the expected payload shape."""


class RosterUnavailableError(ServiceError):
    def __init__(self, class_id: str, reason: str) -> None:
        super().__init__(f"Could not load students for class {class_id}: {reason}", status.HTTP_502_BAD_GATEWAY)
        self.class_id = class_id


class SessionNotFoundError(ServiceError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Attendance session {session_id} not found", status.HTTP_404_NOT_FOUND)


class UnknownStudentError(ServiceError):
    def __init__(self, student_id: str) -> None:
        super().__init__(f"Student {student_id} is not in this class", status.HTTP_404_NOT_FOUND)


class StatusLockedError(ServiceError):
    """A manual edit contradicts an event or leave override."""

    def __init__(self, student_id: str, locked_status: str) -> None:
        super().__init__(
            f"Status of student {student_id} is locked to '{locked_status}' by an event or leave",
            status.HTTP_409_CONFLICT,
        )
