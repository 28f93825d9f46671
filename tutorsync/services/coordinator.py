"""Live session lifecycle coordinator.

One ``SessionCoordinator`` per connected client. It owns the client's view
of the session lifecycle::

    IDLE -> STARTING -> ACTIVE -> ENDING -> IDLE
                 \\         |        /
                  +----> ERROR <---+   (returns to the prior stable state)

Every mutating command is checked against the caller's role and identity
before it touches the store, then issued as an atomic partial update over
the field paths it owns. The shared session document is observed through a
``SessionSynchronizer``; when another participant completes the session the
local state is torn down.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
import threading
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from tutorsync.core.config import settings
from tutorsync.core.errors import (
    BookNotInCourse,
    ClassNotFound,
    CourseNotFound,
    MeetingProvisionFailed,
    NoActiveSession,
    NotEnrolled,
    PermissionDenied,
    SessionError,
    SessionNotFound,
    StoreWriteFailed,
)
from tutorsync.core.logging import get_logger, LogTimer
from tutorsync.domain.classroom import Course
from tutorsync.domain.session import (
    Assessment,
    JoinStatus,
    MeetingInfo,
    ProgressStatus,
    SessionFeedback,
    SessionStatus,
    StudentProgress,
)
from tutorsync.domain.user import Role, User
from tutorsync.infrastructure.store import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentStore,
    Snapshot,
    StoreError,
    doc_key,
    get_document_store,
)
from tutorsync.services.aggregator import TerminationAggregator
from tutorsync.services.annotations import AnnotationStore
from tutorsync.services.synchronizer import SessionSynchronizer

logger = get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"
    ERROR = "error"


STABLE_STATES = (SessionState.IDLE, SessionState.ACTIVE)


def _is_live(session: Optional[Snapshot]) -> bool:
    return bool(session) and session.get("status") == SessionStatus.ACTIVE.value and session.get("endTime") is None


class SessionCoordinator:
    """Session lifecycle for a single connected user.

    Args:
        store: Document store shared by every participant
        user: The connected principal
        provisioner: Meeting provisioner; None disables meetings
        annotations: Drawing store (defaults to one over ``store``)
        aggregator: Termination aggregator (defaults to one over ``store``)
        synchronizer: Snapshot cache for watched documents

    Example:
        >>> coordinator = SessionCoordinator(store, teacher)
        >>> session = coordinator.start_session("class-1", "Book 2", 3)
        >>> coordinator.update_class_progress(4)
        >>> coordinator.end_session({"classNotes": "Good class"})
    """

    def __init__(
        self,
        store: DocumentStore,
        user: User,
        provisioner=None,
        annotations: Optional[AnnotationStore] = None,
        aggregator: Optional[TerminationAggregator] = None,
        synchronizer: Optional[SessionSynchronizer] = None,
    ):
        self.store = store
        self.user = user
        self.provisioner = provisioner
        self.annotations = annotations or AnnotationStore(store)
        self.aggregator = aggregator or TerminationAggregator(store)
        self.sync = synchronizer or SessionSynchronizer(store, owner=user.user_id)

        self._base_log = get_logger(__name__, {"user_id": user.user_id, "role": user.role})
        self.log = self._base_log

        self._state = SessionState.IDLE
        self._session_id: Optional[str] = None
        self._class: Optional[Dict[str, Any]] = None
        self._drawings: Optional[Dict[str, Dict[int, Dict[str, Any]]]] = None
        self._error: Optional[str] = None
        self._remove_listener = None
        # Commands arrive on threadpool workers
        self._op_lock = threading.RLock()

    # ----------------
    # READ ACCESSORS
    # ----------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._state in (SessionState.STARTING, SessionState.ENDING)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def active_session(self) -> Optional[Snapshot]:
        """Freshest snapshot of the active session, or None."""
        if self._session_id is None:
            return None
        key = doc_key("sessions", self._session_id)
        snapshot = self.sync.snapshot(key)
        if snapshot is None:
            snapshot = self.store.get(key)
        return snapshot

    @property
    def active_class(self) -> Optional[Dict[str, Any]]:
        """Class document combined with its course and student records."""
        return self._class

    def describe(self) -> Dict[str, Any]:
        return {
            "activeSession": self.active_session,
            "activeClass": self.active_class,
            "loading": self.loading,
            "error": self.error,
            "state": self.state.value,
        }

    # ----------------
    # STATE PLUMBING
    # ----------------

    @contextmanager
    def _operation(self, name: str, transitional: Optional[SessionState] = None):
        """Run a command; on failure record the error and restore the prior state."""
        with self._op_lock:
            prior = self._state if self._state in STABLE_STATES else SessionState.IDLE
            self._error = None
            if transitional is not None:
                self._state = transitional
            try:
                with LogTimer(self.log, name):
                    yield
            except StoreError as e:
                self._fail(name, prior, str(e))
                raise StoreWriteFailed(str(e)) from e
            except SessionError as e:
                self._fail(name, prior, e.message)
                raise
            except Exception as e:
                self._fail(name, prior, f"Unexpected error: {e}")
                raise
            else:
                if self._state not in STABLE_STATES:
                    self._state = prior

    def _fail(self, name: str, prior: SessionState, message: str) -> None:
        self._error = message
        self._state = SessionState.ERROR
        self.log.error(
            f"{name} failed: {message}",
            extra={"operation": name, "session_id": self._session_id},
        )
        # A session that disappeared while we held it cannot be restored
        if prior == SessionState.ACTIVE and self._session_id is None:
            prior = SessionState.IDLE
        self._state = prior

    def _activate(self, session_id: str, class_data: Optional[Dict[str, Any]]) -> None:
        if self._session_id and self._session_id != session_id:
            self.sync.unwatch(doc_key("sessions", self._session_id))
            self._drawings = None
        if self._remove_listener is not None:
            self._remove_listener()
        self._remove_listener = self.sync.add_listener(self._on_snapshot)

        self._session_id = session_id
        self._class = class_data
        self.log = self._base_log.bind(session_id=session_id)
        self.sync.watch_session(session_id)
        self._state = SessionState.ACTIVE

    def _teardown(self) -> None:
        self.sync.close()
        self._remove_listener = None
        self._session_id = None
        self._class = None
        self._drawings = None
        self._state = SessionState.IDLE
        self.log = self._base_log

    def _on_snapshot(self, key: str, snapshot: Optional[Snapshot]) -> None:
        if self._session_id is None or key != doc_key("sessions", self._session_id):
            return
        if _is_live(snapshot) or self._state == SessionState.ENDING:
            return
        self.log.info(
            "Session ended by another participant; clearing local state",
            extra={"session_id": self._session_id},
        )
        self._teardown()

    def _require_active(self) -> Snapshot:
        if self._session_id is None:
            raise NoActiveSession()
        snapshot = self.store.get(doc_key("sessions", self._session_id))
        if not _is_live(snapshot):
            self._teardown()
            raise NoActiveSession("Session has already ended")
        return snapshot

    # ----------------
    # AUTHORIZATION
    # ----------------

    def _require_teacher(self) -> None:
        if not self.user.is_teacher:
            raise PermissionDenied("Only teachers can manage sessions")

    def _require_owner(self, doc: Dict[str, Any], action: str) -> None:
        if self.user.role == Role.ADMIN.value:
            return
        if self.user.is_teacher and doc.get("teacherId") == self.user.user_id:
            return
        raise PermissionDenied(f"Only the session's teacher can {action}")

    def _require_student_scope(self, session: Dict[str, Any], student_id: str) -> None:
        """Students write only their own sub-paths; the owning teacher writes any."""
        if student_id == self.user.user_id and not self.user.is_teacher:
            return
        self._require_owner(session, "write another student's state")

    # ----------------
    # LOADING
    # ----------------

    def _load_class(self, class_id: str) -> Dict[str, Any]:
        """Load a class combined with its course and student directory records."""
        classroom = self.store.get(doc_key("classes", class_id))
        if classroom is None:
            raise ClassNotFound(class_id)

        course_id = classroom.get("courseId")
        course = self.store.get(doc_key("courses", course_id)) if course_id else None
        if course is None:
            raise CourseNotFound(course_id)

        students = []
        for student_id in classroom.get("studentIds") or []:
            record = self.store.get(doc_key("users", student_id))
            if record is None:
                self.log.debug(f"Student {student_id} missing from directory", extra={"class_id": class_id})
                continue
            students.append(record)

        return {
            **classroom,
            "id": class_id,
            "course": Course.model_validate(course).to_document(),
            "students": students,
            "studentIds": list(classroom.get("studentIds") or []),
        }

    def _safe_load_class(self, class_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not class_id:
            return None
        try:
            return self._load_class(class_id)
        except SessionError as e:
            self.log.warning(f"Class data unavailable: {e.message}", extra={"class_id": class_id})
            return None

    # ----------------
    # LIFECYCLE
    # ----------------

    def _check_existing_session(self, class_id: str) -> Optional[Snapshot]:
        """Return this teacher's live session for the class; end live ones elsewhere."""
        existing = None
        live = self.store.query(
            "sessions",
            [("teacherId", "==", self.user.user_id), ("status", "==", SessionStatus.ACTIVE.value)],
            order_by=("startTime",),
            descending=True,
        )
        for session in live:
            if session.get("endTime") is not None:
                continue
            if session.get("classId") == class_id and existing is None:
                existing = session
                continue
            self._close(session, "superseded")
        return existing

    def _close(self, session: Snapshot, reason: str) -> None:
        self.store.update(
            doc_key("sessions", session["id"]),
            {
                "status": SessionStatus.COMPLETED.value,
                "endTime": SERVER_TIMESTAMP,
                "endedAutomatically": True,
                "endReason": reason,
            },
            writer=self.user.user_id,
        )
        class_id = session.get("classId")
        if class_id:
            classroom = self.store.get(doc_key("classes", class_id))
            if classroom and classroom.get("activeSession") == session["id"]:
                self.store.update(doc_key("classes", class_id), {"activeSession": None}, writer=self.user.user_id)
        self.log.info(
            f"Closed session {session['id']} ({reason})",
            extra={"session_id": session["id"], "class_id": class_id},
        )

    def _provision_meeting(self, class_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.provisioner is None:
            return None
        course_name = (class_data.get("course") or {}).get("name") or class_data.get("name") or "Teaching"
        title = f"{course_name} Session - {datetime.now(timezone.utc).date().isoformat()}"
        try:
            meeting = self.provisioner.create_meeting(
                title=title,
                start_iso=None,
                duration_minutes=settings.meet_default_duration_minutes,
                attendee_emails=[s.get("email") for s in class_data.get("students", []) if s.get("email")],
                organizer_email=self.user.email,
                teacher_id=self.user.user_id,
            )
        except MeetingProvisionFailed as e:
            self.log.warning(
                f"Failed to create meeting, continuing without one: {e.message}",
                extra={"class_id": class_data.get("id")},
            )
            return None
        return MeetingInfo(
            link=meeting.get("link"),
            external_event_id=meeting.get("eventId"),
            start_time=meeting.get("start"),
            end_time=meeting.get("end"),
        ).to_document()

    def start_session(self, class_id: str, book_id: Optional[str] = None, initial_page: int = 1) -> Snapshot:
        """Open (or resume) the live session for a class.

        Raises:
            ClassNotFound / CourseNotFound: Roster or course missing
            BookNotInCourse: ``book_id`` outside a non-empty course book list
            PermissionDenied: Caller does not teach the class
        """
        with self._operation("start_session", SessionState.STARTING):
            self._require_teacher()
            if initial_page < 1:
                raise SessionError("Initial page must be at least 1")

            class_data = self._load_class(class_id)
            self._require_owner(class_data, "start a session for this class")

            existing = self._check_existing_session(class_id)
            if existing is not None:
                self._activate(existing["id"], class_data)
                self.load_session_drawings(force_refresh=True)
                self.log.info(
                    f"Resumed active session {existing['id']}",
                    extra={"session_id": existing["id"], "class_id": class_id},
                )
                return self.active_session

            books = class_data["course"].get("books") or []
            if not book_id and books:
                book_id = books[0]
            if books and book_id not in books:
                raise BookNotInCourse(book_id, class_data["course"].get("id"))

            student_ids = class_data["studentIds"]
            student_progress = {
                student_id: {
                    **StudentProgress(current_page=initial_page).to_document(),
                    "notes": {},
                    "assessment": Assessment().to_document(),
                }
                for student_id in student_ids
            }
            meeting = self._provision_meeting(class_data)

            session = {
                "teacherId": self.user.user_id,
                "classId": class_id,
                "status": SessionStatus.ACTIVE.value,
                "startTime": SERVER_TIMESTAMP,
                "endTime": None,
                "book": book_id,
                "startPage": initial_page,
                "currentPage": initial_page,
                "endPage": initial_page,
                "attendees": [],
                "studentIds": list(student_ids),
                "studentProgress": student_progress,
                "studentStatus": {},
                "meeting": meeting,
                "classData": {
                    "name": class_data.get("name"),
                    "course": class_data["course"],
                    "schedule": class_data.get("schedule"),
                },
            }

            try:
                session_id = self.store.create("sessions", session)
            except StoreError:
                if meeting and self.provisioner is not None:
                    self.provisioner.delete_meeting(self.user.user_id, meeting["externalEventId"])
                raise
            self.store.update(doc_key("classes", class_id), {"activeSession": session_id}, writer=self.user.user_id)

            self._activate(session_id, class_data)
            self._drawings = {}
            self.log.info(
                f"Session started on {book_id} page {initial_page}",
                extra={"session_id": session_id, "class_id": class_id},
            )
            return self.active_session

    def restore(self) -> Optional[Snapshot]:
        """Reattach to a live session after reconnecting, if there is one."""
        with self._operation("restore_session"):
            if self.user.is_teacher:
                filters = [("teacherId", "==", self.user.user_id)]
            else:
                filters = [("attendees", "array_contains", self.user.user_id)]
            filters.append(("status", "==", SessionStatus.ACTIVE.value))

            for session in self.store.query("sessions", filters, order_by=("startTime",), descending=True):
                if not _is_live(session):
                    continue
                status = (session.get("studentStatus") or {}).get(self.user.user_id) or {}
                if not self.user.is_teacher and status.get("status") == JoinStatus.LEFT.value:
                    continue
                self._activate(session["id"], self._safe_load_class(session.get("classId")))
                self.log.info("Restored active session", extra={"session_id": session["id"]})
                return self.active_session
            return None

    def join_session(self, session_id: str) -> Snapshot:
        """Join a live session as a rostered student. Idempotent."""
        with self._operation("join_session"):
            session = self.store.get(doc_key("sessions", session_id))
            if session is None:
                raise SessionNotFound(session_id)
            if not _is_live(session):
                raise NoActiveSession("Session has already ended")

            uid = self.user.user_id
            owner = self.user.is_teacher and session.get("teacherId") == uid
            if not owner:
                roster = session.get("studentIds") or []
                class_id = session.get("classId")
                classroom = self.store.get(doc_key("classes", class_id)) if class_id else None
                if classroom is not None:
                    roster = classroom.get("studentIds") or roster
                if uid not in roster:
                    raise NotEnrolled(uid, session.get("classId"))

                self.store.update(
                    doc_key("sessions", session_id),
                    {
                        "attendees": ArrayUnion(uid),
                        f"studentStatus.{uid}.status": JoinStatus.JOINED.value,
                        f"studentStatus.{uid}.joinedAt": SERVER_TIMESTAMP,
                        f"studentStatus.{uid}.leftAt": None,
                        "lastActivity": SERVER_TIMESTAMP,
                    },
                    writer=uid,
                )

            self._activate(session_id, self._safe_load_class(session.get("classId")))
            self.log.info("Joined session", extra={"session_id": session_id, "class_id": session.get("classId")})
            return self.active_session

    def leave_session(self) -> None:
        """Mark the student as left and drop local session state."""
        with self._operation("leave_session"):
            session = self._require_active()
            uid = self.user.user_id
            if not self.user.is_teacher:
                self.store.update(
                    doc_key("sessions", session["id"]),
                    {
                        f"studentStatus.{uid}.status": JoinStatus.LEFT.value,
                        f"studentStatus.{uid}.leftAt": SERVER_TIMESTAMP,
                        "lastActivity": SERVER_TIMESTAMP,
                    },
                    writer=uid,
                )
            self.log.info("Left session", extra={"session_id": session["id"]})
            self._teardown()

    # ----------------
    # SHARED CURSOR
    # ----------------

    @staticmethod
    def _check_page(page_number: int) -> None:
        if not isinstance(page_number, int) or page_number < 1:
            raise SessionError("Page number must be a positive integer")

    def update_class_progress(self, page_number: int) -> Snapshot:
        """Advance the class-wide page; writes only currentPage and endPage."""
        with self._operation("update_class_progress"):
            session = self._require_active()
            self._require_owner(session, "advance the class page")
            self._check_page(page_number)
            return self.store.update(
                doc_key("sessions", session["id"]),
                {"currentPage": page_number, "endPage": page_number},
                writer=self.user.user_id,
            )

    def update_session_page(self, page_number: int) -> Snapshot:
        """Move the viewer page without changing the recorded end page."""
        with self._operation("update_session_page"):
            session = self._require_active()
            self._require_owner(session, "change the page")
            self._check_page(page_number)
            return self.store.update(
                doc_key("sessions", session["id"]),
                {"currentPage": page_number},
                writer=self.user.user_id,
            )

    def update_session_book(self, book: str) -> Snapshot:
        """Switch books; the page cursor resets to the first page."""
        with self._operation("update_session_book"):
            session = self._require_active()
            self._require_owner(session, "change the book")

            course = (self._class or {}).get("course") or (session.get("classData") or {}).get("course") or {}
            books = course.get("books") or []
            if not book or (books and book not in books):
                raise BookNotInCourse(book, course.get("id"))

            snapshot = self.store.update(
                doc_key("sessions", session["id"]),
                {"book": book, "currentPage": 1, "endPage": 1},
                writer=self.user.user_id,
            )
            self._drawings = None
            return snapshot

    def update_progress(self, progress: Dict[str, Any], student_id: Optional[str] = None) -> Snapshot:
        """Write a student's own progress fields plus a fresh lastActive."""
        with self._operation("update_progress"):
            session = self._require_active()
            student_id = student_id or self.user.user_id
            self._require_student_scope(session, student_id)
            if student_id not in (session.get("studentIds") or []):
                raise NotEnrolled(student_id, session.get("classId"))

            try:
                parsed = StudentProgress.model_validate(progress or {})
            except ValidationError as e:
                raise SessionError(f"Invalid progress update: {e.errors()[0]['msg']}") from e
            if parsed.status not in {s.value for s in ProgressStatus}:
                raise SessionError(f"Unknown progress status: {parsed.status}")

            values = parsed.model_dump(by_alias=True, exclude_unset=True, exclude={"last_active"})
            values.pop("lastActive", None)
            fields: Dict[str, Any] = {
                f"studentProgress.{student_id}.{name}": value for name, value in values.items()
            }
            fields[f"studentProgress.{student_id}.lastActive"] = SERVER_TIMESTAMP

            return self.store.update(doc_key("sessions", session["id"]), fields, writer=self.user.user_id)

    # ----------------
    # DRAWINGS
    # ----------------

    def save_drawing(
        self,
        student_id: str,
        page: int,
        lines: List[Dict[str, Any]],
        width: Optional[float] = None,
        height: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Append a drawing for (student, page) in the active session."""
        with self._operation("save_drawing"):
            session = self._require_active()
            self._require_student_scope(session, student_id)
            self._check_page(page)

            try:
                record = self.annotations.save(
                    student_id,
                    page,
                    lines,
                    session_id=session["id"],
                    class_id=session.get("classId"),
                    book=session.get("book"),
                    author_id=self.user.user_id,
                    width=width,
                    height=height,
                )
            except ValueError as e:
                raise SessionError(f"Invalid drawing: {e}") from e

            # Signals other clients that a newer drawing exists for the page
            self.store.update(
                doc_key("sessions", session["id"]),
                {f"studentProgress.{student_id}.drawings.{page}": record["id"]},
                writer=self.user.user_id,
            )
            if self._drawings is not None:
                self._drawings.setdefault(student_id, {})[page] = record
            return record

    def load_session_drawings(self, force_refresh: bool = False) -> Dict[str, Dict[int, Dict[str, Any]]]:
        """Newest drawing per (student, page), cached until refreshed."""
        if self._session_id is None:
            raise NoActiveSession()
        if self._drawings is not None and not force_refresh:
            return self._drawings
        try:
            self._drawings = self.annotations.load_session(self._session_id)
        except StoreError as e:
            self._error = str(e)
            raise StoreWriteFailed(str(e)) from e
        return self._drawings

    def get_drawing(self, page: int, student_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Latest drawing record for a page of the active session."""
        if self._session_id is None:
            raise NoActiveSession()
        return self.annotations.latest(page, student_id or self.user.user_id, session_id=self._session_id)

    # ----------------
    # TERMINATION
    # ----------------

    def end_session(self, feedback: Union[SessionFeedback, Dict[str, Any], None]) -> Dict[str, Any]:
        """Fold the live session into durable history and return to IDLE."""
        with self._operation("end_session"):
            session = self._require_active()
            self._require_owner(session, "end the session")

            self._state = SessionState.ENDING
            try:
                if isinstance(feedback, SessionFeedback):
                    parsed = feedback
                else:
                    parsed = SessionFeedback.model_validate(feedback or {})
            except ValidationError as e:
                raise SessionError(f"Invalid feedback: {e.errors()[0]['msg']}") from e

            result = self.aggregator.terminate(session, parsed, ended_by=self.user.user_id)
            self._close_meeting(session)
            self._teardown()
            return result

    def _close_meeting(self, session: Snapshot) -> None:
        event_id = (session.get("meeting") or {}).get("externalEventId")
        if not event_id or self.provisioner is None:
            return
        try:
            self.provisioner.update_meeting(
                session.get("teacherId") or self.user.user_id,
                event_id,
                end_iso=datetime.now(timezone.utc).isoformat(),
            )
        except MeetingProvisionFailed as e:
            self.log.warning(f"Could not close meeting {event_id}: {e.message}", extra={"session_id": session["id"]})

    def close_all_sessions(self) -> int:
        """Bulk-close every live session this teacher owns; returns the count."""
        with self._operation("close_all_sessions"):
            self._require_teacher()
            sessions = self.store.query(
                "sessions",
                [("teacherId", "==", self.user.user_id), ("status", "==", SessionStatus.ACTIVE.value)],
            )
            closed = 0
            for session in sessions:
                if session.get("endTime") is not None:
                    continue
                self._close(session, "bulk_close")
                closed += 1

            if closed and self._session_id is not None:
                self._teardown()
            self.log.info(f"Closed {closed} sessions")
            return closed

    def reconcile_class_pointer(self, class_id: str) -> Dict[str, Any]:
        """Repair drift between ``classes/<id>.activeSession`` and the sessions."""
        with self._operation("reconcile_class_pointer"):
            self._require_teacher()
            classroom = self.store.get(doc_key("classes", class_id))
            if classroom is None:
                raise ClassNotFound(class_id)
            self._require_owner(classroom, "reconcile this class")

            class_key = doc_key("classes", class_id)
            pointer = classroom.get("activeSession")
            if pointer:
                session = self.store.get(doc_key("sessions", pointer))
                if _is_live(session):
                    return {"classId": class_id, "activeSession": pointer, "action": "unchanged"}
                self.store.update(class_key, {"activeSession": None}, writer=self.user.user_id)
                self.log.warning(f"Cleared stale activeSession pointer {pointer}", extra={"class_id": class_id})
                return {"classId": class_id, "activeSession": None, "action": "cleared"}

            live = [
                s for s in self.store.query(
                    "sessions",
                    [("classId", "==", class_id), ("status", "==", SessionStatus.ACTIVE.value)],
                    order_by=("startTime",),
                    descending=True,
                )
                if _is_live(s)
            ]
            if not live:
                return {"classId": class_id, "activeSession": None, "action": "unchanged"}

            self.store.update(class_key, {"activeSession": live[0]["id"]}, writer=self.user.user_id)
            self.log.warning(f"Restored missing activeSession pointer {live[0]['id']}", extra={"class_id": class_id})
            return {"classId": class_id, "activeSession": live[0]["id"], "action": "restored"}

    # ----------------
    # MEETING
    # ----------------

    def meeting_details(self) -> Optional[Dict[str, Any]]:
        """Stored meeting for the active session, refreshed from the provider when possible."""
        session = self.active_session
        if not session:
            raise NoActiveSession()
        meeting = session.get("meeting")
        if not meeting or self.provisioner is None or not meeting.get("externalEventId"):
            return meeting
        try:
            live = self.provisioner.get_meeting(session.get("teacherId"), meeting["externalEventId"])
        except MeetingProvisionFailed as e:
            self.log.warning(f"Meeting lookup failed: {e.message}", extra={"session_id": session["id"]})
            return meeting
        return {**meeting, "link": live.get("link") or meeting.get("link"),
                "startTime": live.get("start") or meeting.get("startTime"),
                "endTime": live.get("end") or meeting.get("endTime")}

    def close(self) -> None:
        """Release subscriptions when the client disconnects."""
        self.sync.close()
        self._remove_listener = None


class CoordinatorRegistry:
    """Per-user coordinators for the API process."""

    def __init__(self, store: Optional[DocumentStore] = None, provisioner=None):
        self._store = store
        self._provisioner = provisioner
        self._coordinators: Dict[str, SessionCoordinator] = {}
        self._lock = threading.Lock()

    def configure(self, store: Optional[DocumentStore] = None, provisioner=None) -> None:
        """Swap the backing store and provisioner, dropping every coordinator."""
        self.clear()
        self._store = store
        self._provisioner = provisioner

    @property
    def store(self) -> DocumentStore:
        return self._store or get_document_store()

    @property
    def provisioner(self):
        if self._provisioner is None and settings.meet_enabled:
            from tutorsync.infrastructure.calendar import GoogleMeetProvisioner, MeetCredentialStore

            self._provisioner = GoogleMeetProvisioner(MeetCredentialStore(self.store))
        return self._provisioner

    def get(self, user: User) -> SessionCoordinator:
        with self._lock:
            coordinator = self._coordinators.get(user.user_id)
            if coordinator is None or coordinator.store is not self.store:
                coordinator = SessionCoordinator(self.store, user, provisioner=self.provisioner)
                self._coordinators[user.user_id] = coordinator
                created = True
            else:
                created = False
        if created:
            coordinator.restore()
        return coordinator

    def discard(self, user_id: str) -> None:
        with self._lock:
            coordinator = self._coordinators.pop(user_id, None)
        if coordinator is not None:
            coordinator.close()

    def clear(self) -> None:
        with self._lock:
            coordinators = list(self._coordinators.values())
            self._coordinators.clear()
        for coordinator in coordinators:
            coordinator.close()


registry = CoordinatorRegistry()
