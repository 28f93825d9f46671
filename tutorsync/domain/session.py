"""Domain models for live sessions and termination feedback.

The store holds sessions as plain documents; these models describe their
shape, validate participant input (progress updates, feedback forms) and
fill in defaults so downstream aggregation never has to null-check.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator

from tutorsync.domain.classroom import StoreModel


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ProgressStatus(str, Enum):
    PENDING = "pending"
    READING = "reading"
    COMPLETED = "completed"
    NEEDS_REVIEW = "needs_review"


class JoinStatus(str, Enum):
    JOINED = "joined"
    LEFT = "left"


ASSESSMENT_DIMENSIONS = ("reading", "pronunciation", "memorization")


class StudentProgress(StoreModel):
    """Live per-student cursor inside a session (``studentProgress.<id>``)."""
    current_page: int = Field(default=1, ge=1)
    status: str = ProgressStatus.PENDING.value
    drawings: Dict[str, Any] = Field(default_factory=dict)
    last_active: Optional[datetime] = None


class MeetingInfo(StoreModel):
    """Denormalised copy of the provisioned meeting."""
    link: Optional[str] = None
    external_event_id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class Assessment(StoreModel):
    """Scores 0-5 per dimension; missing dimensions default to zero."""
    reading: float = Field(default=0, ge=0, le=5)
    pronunciation: float = Field(default=0, ge=0, le=5)
    memorization: float = Field(default=0, ge=0, le=5)

    @field_validator("reading", "pronunciation", "memorization", mode="before")
    @classmethod
    def _none_is_zero(cls, value):
        return 0 if value is None else value


class StudentFeedback(StoreModel):
    """Teacher feedback for one student at session end."""
    assessment: Assessment = Field(default_factory=Assessment)
    page_notes: Dict[str, str] = Field(default_factory=dict)
    areas_of_improvement: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    notes: str = ""

    @field_validator("assessment", mode="before")
    @classmethod
    def _none_assessment(cls, value):
        return {} if value is None else value

    @field_validator("page_notes", mode="before")
    @classmethod
    def _stringify_pages(cls, value):
        # Page numbers arrive as ints from forms but are stored as map keys
        if not value:
            return {}
        return {str(page): note for page, note in value.items()}

    @field_validator("areas_of_improvement", "strengths", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return [] if value is None else value

    @field_validator("notes", mode="before")
    @classmethod
    def _none_is_blank(cls, value):
        return "" if value is None else value


class SessionFeedback(StoreModel):
    """Payload collected by the end-session form."""
    class_notes: str = ""
    student_feedback: Dict[str, StudentFeedback] = Field(default_factory=dict)

    @field_validator("class_notes", mode="before")
    @classmethod
    def _none_is_blank(cls, value):
        return "" if value is None else value

