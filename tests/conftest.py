"""Pytest configuration and shared fixtures."""
import pytest
from unittest.mock import Mock
from fastapi.testclient import TestClient

from tutorsync.domain.user import User
from tutorsync.infrastructure.store import MemoryDocumentStore, doc_key, reset_document_store
from tutorsync.services.coordinator import SessionCoordinator, registry

CLASS_ID = "class-c"
COURSE_ID = "course-iqra"
BOOKS = ["Book 1", "Book 2", "Book 3"]


@pytest.fixture(autouse=True)
def store():
    """Fresh in-memory document store for every test."""
    memory_store = MemoryDocumentStore(race_window_ms=500)
    reset_document_store(memory_store)
    registry.configure(store=memory_store)
    yield memory_store
    registry.configure()
    reset_document_store(None)


@pytest.fixture
def teacher():
    return User(id="teacher-1", email="teacher@school.com", name="Ustadha Mariam", role="teacher")


@pytest.fixture
def other_teacher():
    return User(id="teacher-2", email="other@school.com", name="Ustadh Bilal", role="teacher")


@pytest.fixture
def admin():
    return User(id="admin-1", email="admin@school.com", name="Admin", role="admin")


@pytest.fixture
def student1():
    return User(id="s1", email="s1@school.com", name="Aisha", role="student")


@pytest.fixture
def student2():
    return User(id="s2", email="s2@school.com", name="Adam", role="student")


@pytest.fixture
def outsider():
    return User(id="s9", email="s9@school.com", name="Zoe", role="student")


@pytest.fixture
def seeded(store, teacher, other_teacher, admin, student1, student2, outsider):
    """Users, a course with three books and class C with roster [s1, s2]."""
    for user in (teacher, other_teacher, admin, student1, student2, outsider):
        store.set(doc_key("users", user.user_id), user.model_dump(by_alias=True, exclude={"user_id"}))
    store.set(doc_key("courses", COURSE_ID), {"name": "Iqra Reading", "books": BOOKS})
    store.set(doc_key("classes", CLASS_ID), {
        "name": "Class C",
        "teacherId": teacher.user_id,
        "studentIds": [student1.user_id, student2.user_id],
        "courseId": COURSE_ID,
        "activeSession": None,
        "studentProgress": {},
    })
    return store


@pytest.fixture
def mock_provisioner():
    """Meeting provisioner that always succeeds."""
    provisioner = Mock()
    provisioner.create_meeting.return_value = {
        "link": "https://meet.google.com/abc-defg-hij",
        "eventId": "evt-123",
        "start": "2026-10-17T10:00:00+00:00",
        "end": "2026-10-17T11:00:00+00:00",
        "attendees": ["s1@school.com", "s2@school.com"],
    }
    provisioner.update_meeting.return_value = {}
    provisioner.delete_meeting.return_value = True
    return provisioner


@pytest.fixture
def make_coordinator(seeded):
    """Factory for coordinators bound to the seeded store."""
    created = []

    def _make(user, provisioner=None, **kwargs):
        coordinator = SessionCoordinator(seeded, user, provisioner=provisioner, **kwargs)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.close()


@pytest.fixture
def auth_headers(seeded):
    """Build bearer headers for a user."""
    from tutorsync.core.auth import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers


@pytest.fixture
def test_client(seeded, mock_provisioner):
    """FastAPI test client over the seeded store."""
    registry.configure(store=seeded, provisioner=mock_provisioner)
    from main import app
    return TestClient(app)
