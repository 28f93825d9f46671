"""Domain models for classes, courses and cumulative student records."""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class StoreModel(BaseModel):
    """Base for documents persisted with camelCase field names."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "allow"

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=False)


class Course(StoreModel):
    """Course metadata consumed read-only by the session core.

    ``books`` lists the book identifiers a session for this course may use;
    an empty list places no constraint.
    """
    id: str
    name: str = ""
    books: List[str] = Field(default_factory=list)


class SessionRecord(StoreModel):
    """One completed session as seen from a student's cumulative record."""
    session_id: str
    session_doc_id: Optional[str] = None
    date: str
    book: Optional[str] = None
    start_page: Optional[int] = None
    end_page: Optional[int] = None


class AssessmentRecord(SessionRecord):
    """Assessment appended on termination for a single student."""
    assessment: Dict[str, float] = Field(default_factory=dict)
    page_notes: Dict[str, str] = Field(default_factory=dict)
    areas_of_improvement: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    notes: str = ""


class StudentProgressEntry(StoreModel):
    """Append-only per-student history kept on the class document."""
    sessions: List[SessionRecord] = Field(default_factory=list)
    assessments: List[AssessmentRecord] = Field(default_factory=list)


class ClassRoom(StoreModel):
    """Class record owned by the CRUD side of the platform.

    The session core only writes ``activeSession``, ``lastSession`` and the
    ``studentProgress`` history map.
    """
    id: str
    name: str = ""
    teacher_id: Optional[str] = None
    student_ids: List[str] = Field(default_factory=list)
    course_id: Optional[str] = None
    active_session: Optional[str] = None
    last_session: Optional[Dict[str, Any]] = None
    student_progress: Dict[str, StudentProgressEntry] = Field(default_factory=dict)
    schedule: Optional[Dict[str, Any]] = None
