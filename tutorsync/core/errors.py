"""Error taxonomy for the live session core.

Every error raised by the coordinator, aggregator or provisioner derives
from SessionError and carries the HTTP status the API layer maps it to.
"""
from typing import Optional


class SessionError(Exception):
    """Base class for session-core errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClassNotFound(SessionError):
    status_code = 404

    def __init__(self, class_id: str):
        super().__init__(f"Class not found: {class_id}")
        self.class_id = class_id


class CourseNotFound(SessionError):
    status_code = 404

    def __init__(self, course_id: Optional[str]):
        super().__init__(f"Course not found: {course_id}")
        self.course_id = course_id


class SessionNotFound(SessionError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class NotEnrolled(SessionError):
    status_code = 403

    def __init__(self, user_id: str, class_id: str):
        super().__init__(f"User {user_id} is not enrolled in class {class_id}")
        self.user_id = user_id
        self.class_id = class_id


class NoActiveSession(SessionError):
    status_code = 409

    def __init__(self, message: str = "No active session"):
        super().__init__(message)


class BookNotInCourse(SessionError):
    status_code = 409

    def __init__(self, book_id: Optional[str], course_id: Optional[str]):
        super().__init__(f"Selected book '{book_id}' is not in course {course_id}")
        self.book_id = book_id
        self.course_id = course_id


class PermissionDenied(SessionError):
    """Caller's role or identity does not allow the command."""

    status_code = 403


class MeetingProvisionFailed(SessionError):
    """Meeting provider call failed; absorbed during session start."""

    status_code = 502


class MeetingCredentialsMissing(MeetingProvisionFailed):
    """No delegated calendar credential is stored for the organizer."""

    def __init__(self, teacher_id: str):
        super().__init__(
            f"No valid Google credentials found for {teacher_id}. "
            "Please sign in with Google first."
        )
        self.teacher_id = teacher_id


class StoreWriteFailed(SessionError):
    """A store write failed; message is the underlying error verbatim."""

    status_code = 502
