"""Append-only freehand drawing storage.

Every save creates a new record in the ``drawings`` collection; the current
drawing for a (session or class, book, page, student) tuple is the newest
record by timestamp, then sequence. Nothing is overwritten, so teacher view
mode and student edit mode never race on a shared slot, and undo stays a
purely client-side revert. ``compact`` bounds growth by keeping the newest
records per tuple.
"""
import copy
import time
from typing import Any, Dict, List, Optional, Sequence

from tutorsync.core.config import settings
from tutorsync.core.logging import get_logger, LogTimer
from tutorsync.domain.drawing import Stroke
from tutorsync.infrastructure.store import (
    DocumentStore,
    Filter,
    doc_key,
    utcnow_iso,
)

logger = get_logger(__name__)

COLLECTION = "drawings"
ORDER = ("timestamp", "seq")


def _filters(
    page: Optional[int] = None,
    student_id: Optional[str] = None,
    session_id: Optional[str] = None,
    class_id: Optional[str] = None,
    book: Optional[str] = None,
) -> List[Filter]:
    filters: List[Filter] = []
    for field, value in (
        ("sessionId", session_id),
        ("classId", class_id),
        ("book", book),
        ("page", page),
        ("studentId", student_id),
    ):
        if value is not None:
            filters.append((field, "==", value))
    return filters


def validate_lines(lines: Any) -> List[Dict[str, Any]]:
    """Check stroke shape and return the lines exactly as given."""
    if lines is None:
        return []
    if not isinstance(lines, list):
        raise ValueError("Drawing lines must be a list of strokes")
    for line in lines:
        Stroke.model_validate(line)
    return copy.deepcopy(lines)


class AnnotationStore:
    """Save and load drawings keyed by (session/class, book, page, student)."""

    def __init__(self, store: DocumentStore, keep_latest: Optional[int] = None):
        self.store = store
        self.keep_latest = settings.drawing_history_keep if keep_latest is None else keep_latest

    def save(
        self,
        student_id: str,
        page: int,
        lines: Sequence[Dict[str, Any]],
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        book: Optional[str] = None,
        author_id: Optional[str] = None,
        width: Optional[float] = None,
        height: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Append a new drawing record and return it (with ``id``)."""
        if session_id is None and class_id is None:
            raise ValueError("A drawing needs a session or class scope")

        record = {
            "sessionId": session_id,
            "classId": class_id,
            "book": book,
            "page": page,
            "studentId": student_id,
            "authorId": author_id or student_id,
            "lines": validate_lines(list(lines) if lines is not None else None),
            "width": width,
            "height": height,
            "timestamp": utcnow_iso(),
            "seq": time.time_ns(),
        }

        with LogTimer(logger, "drawing_save"):
            record_id = self.store.create(COLLECTION, record)
        record["id"] = record_id

        logger.info(
            f"Saved drawing {record_id} ({len(record['lines'])} strokes) for page {page}",
            extra={"session_id": session_id, "class_id": class_id, "student_id": student_id},
        )

        if self.keep_latest:
            self.compact(page=page, student_id=student_id, session_id=session_id,
                         class_id=class_id, book=book, keep_latest=self.keep_latest)
        return record

    def history(
        self,
        page: int,
        student_id: str,
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        book: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """All saves for the tuple, newest first."""
        return self.store.query(
            COLLECTION,
            _filters(page, student_id, session_id, class_id, book),
            order_by=ORDER,
            descending=True,
            limit=limit,
        )

    def latest(
        self,
        page: int,
        student_id: str,
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        book: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        records = self.history(page, student_id, session_id, class_id, book, limit=1)
        return records[0] if records else None

    def lines_for(
        self,
        page: int,
        student_id: str,
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        book: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        record = self.latest(page, student_id, session_id, class_id, book)
        return record["lines"] if record else []

    def load_session(self, session_id: str, book: Optional[str] = None) -> Dict[str, Dict[int, Dict[str, Any]]]:
        """Newest record per (student, page) for a session."""
        records = self.store.query(
            COLLECTION,
            _filters(session_id=session_id, book=book),
            order_by=ORDER,
            descending=True,
        )
        drawings: Dict[str, Dict[int, Dict[str, Any]]] = {}
        for record in records:
            pages = drawings.setdefault(record["studentId"], {})
            # Records arrive newest first; keep the first seen per page
            pages.setdefault(record["page"], record)
        return drawings

    def compact(
        self,
        page: int,
        student_id: str,
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        book: Optional[str] = None,
        keep_latest: Optional[int] = None,
    ) -> int:
        """Delete all but the newest ``keep_latest`` records for the tuple."""
        keep = self.keep_latest if keep_latest is None else keep_latest
        if not keep or keep < 1:
            return 0

        stale = self.history(page, student_id, session_id, class_id, book)[keep:]
        for record in stale:
            self.store.delete(doc_key(COLLECTION, record["id"]))

        if stale:
            logger.debug(
                f"Compacted {len(stale)} drawing records for page {page}",
                extra={"session_id": session_id, "student_id": student_id},
            )
        return len(stale)
