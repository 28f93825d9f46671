"""Termination aggregator.

Folds a live session snapshot and the teacher's end-of-session feedback into
durable records:

1. a human-readable session id (``<book>-<YYYY-MM-DD>-<id suffix>``)
2. one atomic update of the session document: completed status, end time,
   end page and the normalized feedback block
3. a read-modify-write of the class's ``studentProgress`` map appending one
   ``sessions`` and one ``assessments`` entry per student in the feedback

Steps 2 and 3 are separate writes. A termination intent document is written
before step 2 and removed after step 3, recording which steps landed, so
``recover_pending`` can finish a termination interrupted between them.
Nothing is rolled back; write failures surface as ``StoreWriteFailed``.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from tutorsync.core.errors import StoreWriteFailed
from tutorsync.core.logging import get_logger, LogTimer
from tutorsync.domain.classroom import AssessmentRecord, SessionRecord
from tutorsync.domain.session import SessionFeedback, SessionStatus, StudentFeedback
from tutorsync.infrastructure.store import (
    DocumentStore,
    StoreError,
    doc_key,
    utcnow_iso,
)
from tutorsync.utils.text import sanitize_tags, sanitize_text

logger = get_logger(__name__)

INTENTS_COLLECTION = "terminations"


def readable_session_id(book: Optional[str], session_id: str, when: Optional[datetime] = None) -> str:
    """Cosmetic id shown in history views; never used for lookups."""
    when = when or datetime.now(timezone.utc)
    return f"{book or 'session'}-{when.date().isoformat()}-{session_id[-6:]}"


def normalize_feedback(feedback: Union[SessionFeedback, Dict[str, Any], None]) -> SessionFeedback:
    """Validate the feedback form and fill every missing field with a default."""
    if feedback is None:
        parsed = SessionFeedback()
    elif isinstance(feedback, SessionFeedback):
        parsed = feedback
    else:
        parsed = SessionFeedback.model_validate(feedback)

    students = {}
    for student_id, data in parsed.student_feedback.items():
        students[student_id] = StudentFeedback(
            assessment=data.assessment,
            page_notes={page: sanitize_text(note) for page, note in data.page_notes.items()},
            areas_of_improvement=sanitize_tags(data.areas_of_improvement),
            strengths=sanitize_tags(data.strengths),
            notes=sanitize_text(data.notes),
        )
    return SessionFeedback(class_notes=sanitize_text(parsed.class_notes), student_feedback=students)


class TerminationAggregator:
    """Writes the completed-session record and per-student history."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def terminate(
        self,
        session: Dict[str, Any],
        feedback: Union[SessionFeedback, Dict[str, Any], None],
        ended_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Terminate a live session.

        Args:
            session: Current session snapshot (must include ``id``)
            feedback: End-of-session form payload
            ended_by: User id of the teacher ending the session

        Returns:
            Summary with sessionId, readableId, endedAt and studentsUpdated

        Raises:
            StoreWriteFailed: If any store write fails (message verbatim)
        """
        session_id = session["id"]
        now = datetime.now(timezone.utc)
        ended_at = now.isoformat()
        readable_id = readable_session_id(session.get("book"), session_id, now)
        normalized = normalize_feedback(feedback)

        start_page = session.get("startPage")
        end_page = session.get("currentPage")

        intent = {
            "sessionId": session_id,
            "classId": session.get("classId"),
            "readableId": readable_id,
            "book": session.get("book"),
            "startPage": start_page,
            "endPage": end_page,
            "endedAt": ended_at,
            "endedBy": ended_by,
            "feedback": normalized.to_document(),
            "steps": {"session": False, "history": False},
        }
        intent_key = doc_key(INTENTS_COLLECTION, session_id)

        try:
            self.store.set(intent_key, intent)
            with LogTimer(logger, "terminate_session_update"):
                self._complete_session(intent)
            self.store.update(intent_key, {"steps.session": True})

            with LogTimer(logger, "terminate_history_update"):
                updated = self._append_history(intent)
            self.store.update(intent_key, {"steps.history": True})

            self.store.delete(intent_key)
        except StoreError as e:
            logger.error(
                f"Termination of {session_id} failed: {e}",
                extra={"session_id": session_id, "class_id": session.get("classId")},
            )
            raise StoreWriteFailed(str(e)) from e

        logger.info(
            f"Session {session_id} completed as {readable_id}",
            extra={"session_id": session_id, "class_id": session.get("classId"), "user_id": ended_by},
        )
        return {
            "sessionId": session_id,
            "readableId": readable_id,
            "endedAt": ended_at,
            "studentsUpdated": updated,
        }

    def _complete_session(self, intent: Dict[str, Any]) -> None:
        self.store.update(
            doc_key("sessions", intent["sessionId"]),
            {
                "status": SessionStatus.COMPLETED.value,
                "endTime": intent["endedAt"],
                "sessionId": intent["readableId"],
                "endPage": intent["endPage"],
                "feedback": intent["feedback"],
            },
            writer=intent.get("endedBy"),
        )

    def _append_history(self, intent: Dict[str, Any]) -> List[str]:
        class_id = intent.get("classId")
        if not class_id:
            return []
        class_key = doc_key("classes", class_id)
        classroom = self.store.get(class_key)
        if classroom is None:
            logger.warning(f"Class {class_id} missing; skipping history update",
                           extra={"class_id": class_id, "session_id": intent["sessionId"]})
            return []

        progress = dict(classroom.get("studentProgress") or {})
        feedback = SessionFeedback.model_validate(intent["feedback"])
        updated: List[str] = []

        for student_id, data in feedback.student_feedback.items():
            entry = progress.get(student_id) or {}
            sessions = list(entry.get("sessions") or [])
            assessments = list(entry.get("assessments") or [])

            # Re-running after a crash must not append twice
            if any(s.get("sessionDocId") == intent["sessionId"] for s in sessions):
                continue

            session_record = SessionRecord(
                session_id=intent["readableId"],
                session_doc_id=intent["sessionId"],
                date=intent["endedAt"],
                book=intent.get("book"),
                start_page=intent.get("startPage"),
                end_page=intent.get("endPage"),
            )
            assessment_record = AssessmentRecord(
                **session_record.model_dump(),
                assessment=data.assessment.model_dump(),
                page_notes=data.page_notes,
                areas_of_improvement=data.areas_of_improvement,
                strengths=data.strengths,
                notes=data.notes,
            )
            sessions.append(session_record.to_document())
            assessments.append(assessment_record.to_document())
            progress[student_id] = {**entry, "sessions": sessions, "assessments": assessments}
            updated.append(student_id)

        fields: Dict[str, Any] = {
            "studentProgress": progress,
            "lastUpdated": utcnow_iso(),
            "lastSession": {"sessionId": intent["sessionId"], "endTime": intent["endedAt"]},
        }
        if classroom.get("activeSession") == intent["sessionId"]:
            fields["activeSession"] = None

        self.store.update(class_key, fields, writer=intent.get("endedBy"))
        return updated

    def recover_pending(self) -> List[str]:
        """Finish terminations whose intent record survived a crash."""
        recovered = []
        for intent in self.store.query(INTENTS_COLLECTION):
            session_id = intent["sessionId"]
            intent_key = doc_key(INTENTS_COLLECTION, session_id)
            steps = intent.get("steps") or {}
            try:
                if not steps.get("session"):
                    self._complete_session(intent)
                    self.store.update(intent_key, {"steps.session": True})
                if not steps.get("history"):
                    self._append_history(intent)
                self.store.delete(intent_key)
            except StoreError as e:
                logger.error(f"Recovery of termination {session_id} failed: {e}",
                             extra={"session_id": session_id})
                raise StoreWriteFailed(str(e)) from e
            logger.info(f"Recovered pending termination of {session_id}",
                        extra={"session_id": session_id})
            recovered.append(session_id)
        return recovered
