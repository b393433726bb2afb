import typing


class ProgressError(Exception):
    pass


class ProgressValidationError(ProgressError, ValueError):
    """Raised when a progress payload is structurally invalid. Nothing is merged or stored."""

    def __init__(self, message: str, details: typing.Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ProgressNotFoundError(ProgressError):
    def __init__(self, user_id: str, course_id: str) -> None:
        self.user_id = user_id
        self.course_id = course_id
        super().__init__(f"No course progress for user {user_id}, course {course_id}")


class StorageError(ProgressError):
    """The progress store failed (connectivity, throttling, corrupt item). Never retried here."""


class ProgressConflictError(StorageError):
    """A conditional write lost against a concurrent writer for the same (userId, courseId)."""
