"""FastAPI routes for the live session core.

- JWT bearer authentication & role checks on every route
- One coordinator per connected user (``CoordinatorRegistry``)
- Handlers are plain functions; FastAPI runs them in its threadpool so store
  and Calendar round-trips never block the snapshot streams
- Session errors propagate to the app-level handler, which maps them to
  HTTP statuses
- WebSocket stream pushing every accepted session snapshot
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import Field

from tutorsync.core.auth import authenticate_websocket, get_current_user, require_role
from tutorsync.core.errors import ClassNotFound, NoActiveSession, PermissionDenied, SessionNotFound
from tutorsync.core.logging import get_logger, LogTimer
from tutorsync.domain.classroom import StoreModel
from tutorsync.domain.session import SessionFeedback, SessionStatus
from tutorsync.domain.user import Role, User
from tutorsync.infrastructure.calendar import MeetCredentialStore
from tutorsync.infrastructure.store import doc_key, get_document_store
from tutorsync.services.annotations import AnnotationStore
from tutorsync.services.coordinator import SessionCoordinator, registry
from tutorsync.services.history import class_history, student_history
from tutorsync.services.synchronizer import SessionSynchronizer

logger = get_logger(__name__)
router = APIRouter()

TEACHERS = [Role.TEACHER.value, Role.ADMIN.value]


# -----------------
# REQUEST MODELS
# -----------------

class StartSessionRequest(StoreModel):
    class_id: str
    book_id: Optional[str] = None
    initial_page: int = Field(default=1, ge=1)


class PageRequest(StoreModel):
    page_number: int = Field(ge=1)


class BookRequest(StoreModel):
    book: str


class ProgressRequest(StoreModel):
    student_id: Optional[str] = None
    progress: Dict[str, Any] = Field(default_factory=dict)


class DrawingRequest(StoreModel):
    student_id: Optional[str] = None
    page: int = Field(ge=1)
    lines: List[Dict[str, Any]] = Field(default_factory=list)
    width: Optional[float] = None
    height: Optional[float] = None


class MeetCredentialsRequest(StoreModel):
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    associated_email: Optional[str] = None


# -----------------
# HELPERS
# -----------------

def _coordinator(user: User) -> SessionCoordinator:
    return registry.get(user)


def _attached(user: User, session_id: str) -> SessionCoordinator:
    """Coordinator whose active session is ``session_id``."""
    coordinator = _coordinator(user)
    if coordinator.session_id != session_id:
        raise NoActiveSession(f"Not attached to session {session_id}")
    return coordinator


def _can_view(user: User, session: Dict[str, Any]) -> bool:
    if user.role == Role.ADMIN.value:
        return True
    if session.get("teacherId") == user.user_id:
        return True
    return user.user_id in (session.get("studentIds") or [])


def _load_class_for(user: User, class_id: str) -> Dict[str, Any]:
    classroom = get_document_store().get(doc_key("classes", class_id))
    if classroom is None:
        raise ClassNotFound(class_id)
    if user.role != Role.ADMIN.value and classroom.get("teacherId") != user.user_id:
        if user.user_id not in (classroom.get("studentIds") or []):
            raise PermissionDenied(f"No access to class {class_id}")
    return classroom


# -----------------
# LIFECYCLE
# -----------------

@router.post("/sessions", status_code=status.HTTP_201_CREATED)
def start_session(req: StartSessionRequest, user: User = Depends(require_role(TEACHERS))):
    """Start (or resume) the live session for a class.

    Example:
        POST /sessions
        {"classId": "class-1", "bookId": "Book 2", "initialPage": 3}
    """
    coordinator = _coordinator(user)
    session = coordinator.start_session(req.class_id, req.book_id, req.initial_page)
    return {"session": session, "state": coordinator.state.value}


@router.get("/sessions/active")
def get_active_session(user: User = Depends(get_current_user)):
    """Active session, class, loading flag, last error and lifecycle state."""
    return _coordinator(user).describe()


@router.post("/sessions/close-all")
def close_all_sessions(user: User = Depends(require_role(TEACHERS))):
    """Bulk-close every live session owned by the caller."""
    closed = _coordinator(user).close_all_sessions()
    return {"closed": closed}


@router.post("/sessions/{session_id}/join")
def join_session(session_id: str, user: User = Depends(get_current_user)):
    coordinator = _coordinator(user)
    session = coordinator.join_session(session_id)
    return {"session": session, "state": coordinator.state.value}


@router.post("/sessions/{session_id}/leave")
def leave_session(session_id: str, user: User = Depends(get_current_user)):
    coordinator = _attached(user, session_id)
    coordinator.leave_session()
    return {"left": session_id, "state": coordinator.state.value}


@router.post("/sessions/active/end")
def end_session(feedback: SessionFeedback, user: User = Depends(require_role(TEACHERS))):
    """End the active session with the teacher's feedback form.

    Example:
        POST /sessions/active/end
        {"classNotes": "Good class",
         "studentFeedback": {"s1": {"assessment": {"reading": 4}}}}
    """
    with LogTimer(logger, "end_session_request"):
        result = _coordinator(user).end_session(feedback)
    return result


# -----------------
# SHARED CURSOR
# -----------------

@router.put("/sessions/active/class-progress")
def update_class_progress(req: PageRequest, user: User = Depends(require_role(TEACHERS))):
    return {"session": _coordinator(user).update_class_progress(req.page_number)}


@router.put("/sessions/active/page")
def update_session_page(req: PageRequest, user: User = Depends(require_role(TEACHERS))):
    return {"session": _coordinator(user).update_session_page(req.page_number)}


@router.put("/sessions/active/book")
def update_session_book(req: BookRequest, user: User = Depends(require_role(TEACHERS))):
    return {"session": _coordinator(user).update_session_book(req.book)}


@router.put("/sessions/{session_id}/progress")
def update_progress(session_id: str, req: ProgressRequest, user: User = Depends(get_current_user)):
    """Update a student's own progress (students) or any rostered student's (owning teacher)."""
    coordinator = _attached(user, session_id)
    return {"session": coordinator.update_progress(req.progress, req.student_id)}


# -----------------
# DRAWINGS
# -----------------

@router.post("/sessions/active/drawings", status_code=status.HTTP_201_CREATED)
def save_drawing(req: DrawingRequest, user: User = Depends(get_current_user)):
    record = _coordinator(user).save_drawing(
        req.student_id or user.user_id, req.page, req.lines, req.width, req.height
    )
    return {"drawing": record}


@router.get("/sessions/{session_id}/drawings")
def get_session_drawings(
    session_id: str,
    page: Optional[int] = None,
    student_id: Optional[str] = None,
    user: User = Depends(get_current_user),
):
    """Newest drawing per (student, page), or the newest for one page."""
    session = get_document_store().get(doc_key("sessions", session_id))
    if session is None:
        raise SessionNotFound(session_id)
    if not _can_view(user, session):
        raise PermissionDenied(f"No access to session {session_id}")

    teacher_view = user.is_teacher
    if not teacher_view:
        student_id = user.user_id

    annotations = AnnotationStore(get_document_store())
    if page is not None:
        record = annotations.latest(page, student_id or user.user_id, session_id=session_id)
        return {"drawing": record, "lines": record["lines"] if record else []}

    drawings = annotations.load_session(session_id)
    if student_id:
        drawings = {student_id: drawings.get(student_id, {})}
    return {"drawings": drawings}


# -----------------
# MEETING
# -----------------

@router.get("/sessions/active/meeting")
def get_meeting(user: User = Depends(get_current_user)):
    return {"meeting": _coordinator(user).meeting_details()}


@router.post("/meet/credentials", status_code=status.HTTP_201_CREATED)
def store_meet_credentials(req: MeetCredentialsRequest, user: User = Depends(require_role(TEACHERS))):
    """Store the teacher's delegated calendar token for meeting provisioning."""
    provisioner = registry.provisioner
    credentials = provisioner.credentials if provisioner is not None else MeetCredentialStore(get_document_store())
    credentials.store_credentials(
        user.user_id,
        access_token=req.access_token,
        expires_at=req.expires_at,
        refresh_token=req.refresh_token,
        associated_email=req.associated_email or user.email,
    )
    return {"stored": True, "teacherId": user.user_id}


@router.delete("/meet/credentials")
def remove_meet_credentials(user: User = Depends(require_role(TEACHERS))):
    provisioner = registry.provisioner
    credentials = provisioner.credentials if provisioner is not None else MeetCredentialStore(get_document_store())
    credentials.remove_credentials(user.user_id)
    return {"removed": True, "teacherId": user.user_id}


# -----------------
# CLASSES & HISTORY
# -----------------

@router.post("/classes/{class_id}/reconcile")
def reconcile_class(class_id: str, user: User = Depends(require_role(TEACHERS))):
    return _coordinator(user).reconcile_class_pointer(class_id)


@router.get("/classes/{class_id}/history")
def get_class_history(class_id: str, user: User = Depends(require_role(TEACHERS))):
    classroom = _load_class_for(user, class_id)
    with LogTimer(logger, f"class_history:{class_id}"):
        return class_history(classroom)


@router.get("/classes/{class_id}/students/{student_id}/history")
def get_student_history(class_id: str, student_id: str, user: User = Depends(get_current_user)):
    classroom = _load_class_for(user, class_id)
    if not user.is_teacher and student_id != user.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Students can only view their own history")
    if student_id not in (classroom.get("studentIds") or []) and student_id not in (classroom.get("studentProgress") or {}):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Student {student_id} not in class {class_id}")
    return student_history(classroom, student_id)


# -----------------
# SNAPSHOT STREAM
# -----------------

@router.websocket("/sessions/{session_id}/stream")
async def session_stream(websocket: WebSocket, session_id: str, token: Optional[str] = None):
    """Push every accepted snapshot of the session to the client.

    The stream ends after the snapshot that shows the session completed.
    """
    user = authenticate_websocket(token)
    store = get_document_store()
    session = store.get(doc_key("sessions", session_id)) if user else None
    if user is None or session is None or not _can_view(user, session):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    sync = SessionSynchronizer(store, owner=user.user_id)
    # Redis delivers on its listener thread
    sync.add_listener(lambda key, snapshot: loop.call_soon_threadsafe(queue.put_nowait, snapshot))
    sync.watch_session(session_id)

    async def pump():
        while True:
            snapshot = await queue.get()
            await websocket.send_json({"type": "snapshot", "session": snapshot})
            if snapshot is None or snapshot.get("status") != SessionStatus.ACTIVE.value:
                return

    async def drain():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = [asyncio.create_task(pump()), asyncio.create_task(drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None and not isinstance(task.exception(), WebSocketDisconnect):
                logger.error(f"Snapshot stream failed: {task.exception()}", extra={"session_id": session_id})
    finally:
        sync.close()
        logger.info("Snapshot stream closed", extra={"session_id": session_id, "user_id": user.user_id})

    if tasks[0] in done:
        await websocket.close()
