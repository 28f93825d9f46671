"""Integration tests for API routes."""
from datetime import datetime, timezone
import inspect

import pytest
from fastapi import status
from fastapi.routing import APIRoute
from starlette.websockets import WebSocketDisconnect

from tutorsync.api.routes import router
from tutorsync.core.auth import create_access_token
from tutorsync.infrastructure.store import doc_key

FEEDBACK = {
    "classNotes": "Good class",
    "studentFeedback": {
        "s1": {
            "assessment": {"reading": 4, "pronunciation": 3, "memorization": 5},
            "areasOfImprovement": ["Tajweed"],
            "strengths": ["Fluency"],
        }
    },
}


@pytest.fixture
def started(test_client, auth_headers, teacher):
    """Start a session for class C on Book 2 page 3 and return it."""
    response = test_client.post(
        "/sessions",
        json={"classId": "class-c", "bookId": "Book 2", "initialPage": 3},
        headers=auth_headers(teacher),
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()["session"]


@pytest.fixture
def joined(test_client, auth_headers, student1, started):
    """S1 joined the started session."""
    response = test_client.post(f"/sessions/{started['id']}/join", headers=auth_headers(student1))
    assert response.status_code == status.HTTP_200_OK
    return started


class TestServiceRoutes:
    """Test service info and health checks."""

    def test_http_handlers_run_in_threadpool(self):
        """Test HTTP handlers are plain functions so blocking calls stay off the event loop."""
        handlers = [route for route in router.routes if isinstance(route, APIRoute)]

        assert handlers
        assert [r.path for r in handlers if inspect.iscoroutinefunction(r.endpoint)] == []

    def test_root(self, test_client):
        """Test root endpoint."""
        response = test_client.get("/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "running"

    def test_health(self, test_client):
        """Test the liveness check."""
        response = test_client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"

    def test_ready(self, test_client):
        """Test the readiness check against the memory store."""
        response = test_client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["checks"]["store"] == "ok"

    def test_request_id_header(self, test_client):
        """Test every response carries a request id."""
        assert "X-Request-ID" in test_client.get("/health").headers


class TestAuthentication:
    """Test route protection."""

    def test_without_token(self, test_client):
        """Test protected routes reject missing credentials."""
        response = test_client.get("/sessions/active")

        assert response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN)

    def test_with_invalid_token(self, test_client):
        """Test protected routes reject bad tokens."""
        response = test_client.get("/sessions/active", headers={"Authorization": "Bearer not-a-token"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_student_cannot_start(self, test_client, auth_headers, student1):
        """Test teacher-only routes reject students."""
        response = test_client.post("/sessions", json={"classId": "class-c"}, headers=auth_headers(student1))

        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestSessionLifecycle:
    """Test starting, joining and ending sessions over HTTP."""

    def test_start_session(self, test_client, seeded, started):
        """Test the session is created, pointed to and has a meeting."""
        assert started["status"] == "active"
        assert started["book"] == "Book 2"
        assert started["currentPage"] == 3
        assert started["meeting"]["link"] == "https://meet.google.com/abc-defg-hij"
        assert seeded.get(doc_key("classes", "class-c"))["activeSession"] == started["id"]

    def test_start_twice_resumes(self, test_client, auth_headers, teacher, started):
        """Test a second start returns the existing session."""
        response = test_client.post("/sessions", json={"classId": "class-c"}, headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["session"]["id"] == started["id"]

    def test_active_session(self, test_client, auth_headers, teacher, started):
        """Test the active view reflects the started session."""
        data = test_client.get("/sessions/active", headers=auth_headers(teacher)).json()

        assert data["state"] == "active"
        assert data["loading"] is False
        assert data["activeSession"]["id"] == started["id"]
        assert data["activeClass"]["course"]["books"] == ["Book 1", "Book 2", "Book 3"]

    def test_join_records_attendance(self, test_client, seeded, joined):
        """Test a rostered student joins."""
        session = seeded.get(doc_key("sessions", joined["id"]))

        assert session["attendees"] == ["s1"]
        assert session["studentStatus"]["s1"]["status"] == "joined"

    def test_outsider_cannot_join(self, test_client, auth_headers, outsider, started):
        """Test students outside the roster get 403."""
        response = test_client.post(f"/sessions/{started['id']}/join", headers=auth_headers(outsider))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["type"] == "NotEnrolled"

    def test_join_unknown_session(self, test_client, auth_headers, student1, seeded):
        """Test joining a missing session gives 404."""
        response = test_client.post("/sessions/nope/join", headers=auth_headers(student1))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["type"] == "SessionNotFound"

    def test_leave(self, test_client, seeded, auth_headers, student1, joined):
        """Test leaving marks the student as left."""
        response = test_client.post(f"/sessions/{joined['id']}/leave", headers=auth_headers(student1))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "idle"
        assert seeded.get(doc_key("sessions", joined["id"]))["studentStatus"]["s1"]["status"] == "left"

    def test_end_session(self, test_client, seeded, auth_headers, teacher, mock_provisioner, joined):
        """Test ending folds feedback into class history and closes the meeting."""
        response = test_client.post("/sessions/active/end", json=FEEDBACK, headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["studentsUpdated"] == ["s1"]
        session = seeded.get(doc_key("sessions", joined["id"]))
        classroom = seeded.get(doc_key("classes", "class-c"))
        assert session["status"] == "completed"
        assert classroom["activeSession"] is None
        assert len(classroom["studentProgress"]["s1"]["assessments"]) == 1
        assert mock_provisioner.update_meeting.called

        active = test_client.get("/sessions/active", headers=auth_headers(teacher)).json()
        assert active["state"] == "idle"
        assert active["activeSession"] is None

    def test_end_without_session(self, test_client, auth_headers, teacher, seeded):
        """Test ending with nothing live gives 409."""
        response = test_client.post("/sessions/active/end", json=FEEDBACK, headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["type"] == "NoActiveSession"

    def test_end_with_invalid_scores(self, test_client, auth_headers, teacher, started):
        """Test out-of-range scores are rejected by validation."""
        bad = {"studentFeedback": {"s1": {"assessment": {"reading": 9}}}}
        response = test_client.post("/sessions/active/end", json=bad, headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestSharedCursor:
    """Test page, book and progress updates."""

    def test_class_progress(self, test_client, auth_headers, teacher, started):
        """Test the class page cursor moves forward."""
        response = test_client.put(
            "/sessions/active/class-progress", json={"pageNumber": 7}, headers=auth_headers(teacher)
        )

        session = response.json()["session"]
        assert session["currentPage"] == 7
        assert session["endPage"] == 7

    def test_invalid_page(self, test_client, auth_headers, teacher, started):
        """Test pages below one are rejected."""
        response = test_client.put("/sessions/active/page", json={"pageNumber": 0}, headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_change_book(self, test_client, auth_headers, teacher, started):
        """Test switching books resets the page."""
        response = test_client.put("/sessions/active/book", json={"book": "Book 3"}, headers=auth_headers(teacher))

        session = response.json()["session"]
        assert session["book"] == "Book 3"
        assert session["currentPage"] == 1

    def test_book_outside_course(self, test_client, auth_headers, teacher, started):
        """Test books outside the course give 409."""
        response = test_client.put("/sessions/active/book", json={"book": "Book 9"}, headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["type"] == "BookNotInCourse"

    def test_student_progress(self, test_client, auth_headers, student1, joined):
        """Test a student updates only their own progress fields."""
        response = test_client.put(
            f"/sessions/{joined['id']}/progress",
            json={"progress": {"currentPage": 4, "status": "reading"}},
            headers=auth_headers(student1),
        )

        progress = response.json()["session"]["studentProgress"]["s1"]
        assert progress["currentPage"] == 4
        assert progress["status"] == "reading"
        assert progress["lastActive"] is not None

    def test_student_cannot_write_other_student(self, test_client, auth_headers, student1, joined):
        """Test writing another student's progress is forbidden."""
        response = test_client.put(
            f"/sessions/{joined['id']}/progress",
            json={"studentId": "s2", "progress": {"currentPage": 9}},
            headers=auth_headers(student1),
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_progress_requires_attachment(self, test_client, auth_headers, student2, started):
        """Test updating progress without joining gives 409."""
        response = test_client.put(
            f"/sessions/{started['id']}/progress",
            json={"progress": {"currentPage": 2}},
            headers=auth_headers(student2),
        )

        assert response.status_code == status.HTTP_409_CONFLICT


class TestDrawings:
    """Test drawing routes."""

    LINES = [{"tool": "pen", "color": "#df4b26", "strokeWidth": 5, "points": [1, 2, 3, 4]}]

    def test_save_and_fetch(self, test_client, auth_headers, student1, teacher, joined):
        """Test a student's drawing is visible to the teacher."""
        response = test_client.post(
            "/sessions/active/drawings", json={"page": 3, "lines": self.LINES}, headers=auth_headers(student1)
        )
        assert response.status_code == status.HTTP_201_CREATED

        fetched = test_client.get(
            f"/sessions/{joined['id']}/drawings",
            params={"page": 3, "student_id": "s1"},
            headers=auth_headers(teacher),
        ).json()
        assert fetched["lines"] == self.LINES

        all_drawings = test_client.get(f"/sessions/{joined['id']}/drawings", headers=auth_headers(teacher)).json()
        assert "s1" in all_drawings["drawings"]

    def test_student_sees_only_own(self, test_client, auth_headers, student1, student2, joined):
        """Test students cannot read other students' drawings."""
        test_client.post(f"/sessions/{joined['id']}/join", headers=auth_headers(student2))
        test_client.post("/sessions/active/drawings", json={"page": 3, "lines": self.LINES},
                         headers=auth_headers(student2))

        fetched = test_client.get(
            f"/sessions/{joined['id']}/drawings",
            params={"page": 3, "student_id": "s2"},
            headers=auth_headers(student1),
        ).json()

        assert fetched["drawing"] is None
        assert fetched["lines"] == []

    def test_outsider_cannot_view(self, test_client, auth_headers, outsider, started):
        """Test users outside the session get 403."""
        response = test_client.get(f"/sessions/{started['id']}/drawings", headers=auth_headers(outsider))

        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestMeetingRoutes:
    """Test meeting lookups and credential storage."""

    def test_meeting_details(self, test_client, auth_headers, teacher, mock_provisioner, started):
        """Test the active meeting is returned."""
        mock_provisioner.get_meeting.return_value = {"link": "https://meet.google.com/abc-defg-hij"}

        meeting = test_client.get("/sessions/active/meeting", headers=auth_headers(teacher)).json()["meeting"]

        assert meeting["link"] == "https://meet.google.com/abc-defg-hij"
        assert meeting["externalEventId"] == "evt-123"

    def test_store_credentials(self, test_client, seeded, auth_headers, teacher, mock_provisioner):
        """Test delegated tokens are stored for the caller."""
        response = test_client.post(
            "/meet/credentials",
            json={"accessToken": "ya29.token", "expiresAt": "2026-10-17T12:00:00+00:00"},
            headers=auth_headers(teacher),
        )

        assert response.status_code == status.HTTP_201_CREATED
        mock_provisioner.credentials.store_credentials.assert_called_once()
        assert mock_provisioner.credentials.store_credentials.call_args.args[0] == "teacher-1"
        expires_at = mock_provisioner.credentials.store_credentials.call_args.kwargs["expires_at"]
        assert expires_at == datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    def test_store_credentials_bad_expiry(self, test_client, auth_headers, teacher, mock_provisioner):
        """Test an unparseable expiry is rejected before it reaches the store."""
        response = test_client.post(
            "/meet/credentials",
            json={"accessToken": "ya29.token", "expiresAt": "tomorrow"},
            headers=auth_headers(teacher),
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        mock_provisioner.credentials.store_credentials.assert_not_called()

    def test_remove_credentials(self, test_client, auth_headers, teacher, mock_provisioner):
        """Test the caller's delegated token is removed."""
        response = test_client.delete("/meet/credentials", headers=auth_headers(teacher))

        assert response.json() == {"removed": True, "teacherId": "teacher-1"}
        mock_provisioner.credentials.remove_credentials.assert_called_once_with("teacher-1")


class TestClassRoutes:
    """Test bulk operations, reconciliation and history."""

    def test_close_all(self, test_client, seeded, auth_headers, teacher, started):
        """Test every live session of the caller is closed."""
        response = test_client.post("/sessions/close-all", headers=auth_headers(teacher))

        assert response.json() == {"closed": 1}
        assert seeded.get(doc_key("sessions", started["id"]))["status"] == "completed"

    def test_reconcile_clears_stale_pointer(self, test_client, seeded, auth_headers, teacher):
        """Test a pointer to a finished session is cleared."""
        seeded.set(doc_key("sessions", "old"), {"classId": "class-c", "status": "completed", "endTime": "x"})
        seeded.update(doc_key("classes", "class-c"), {"activeSession": "old"})

        response = test_client.post("/classes/class-c/reconcile", headers=auth_headers(teacher))

        assert response.json()["action"] == "cleared"
        assert seeded.get(doc_key("classes", "class-c"))["activeSession"] is None

    def test_reconcile_other_teacher(self, test_client, auth_headers, other_teacher):
        """Test teachers cannot reconcile classes they do not own."""
        response = test_client.post("/classes/class-c/reconcile", headers=auth_headers(other_teacher))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_unknown_class(self, test_client, auth_headers, teacher):
        """Test unknown classes give 404."""
        response = test_client.get("/classes/nope/history", headers=auth_headers(teacher))

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_history_after_session(self, test_client, auth_headers, teacher, student1, joined):
        """Test class and student history reflect an ended session."""
        test_client.post("/sessions/active/end", json=FEEDBACK, headers=auth_headers(teacher))

        class_view = test_client.get("/classes/class-c/history", headers=auth_headers(teacher)).json()
        assert class_view["totalAssessments"] == 1
        assert class_view["assessedStudents"] == 1

        own = test_client.get("/classes/class-c/students/s1/history", headers=auth_headers(student1)).json()
        assert own["exists"] is True
        assert own["averages"]["reading"] == 4.0

    def test_student_cannot_read_classmate_history(self, test_client, auth_headers, student1, seeded):
        """Test students only see their own history."""
        response = test_client.get("/classes/class-c/students/s2/history", headers=auth_headers(student1))

        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestSnapshotStream:
    """Test the WebSocket snapshot stream."""

    def test_stream_pushes_updates_until_completed(self, test_client, seeded, teacher, started):
        """Test the stream sends the current snapshot, each update and the completion."""
        token = create_access_token(teacher)
        key = doc_key("sessions", started["id"])

        with test_client.websocket_connect(f"/sessions/{started['id']}/stream?token={token}") as ws:
            first = ws.receive_json()
            assert first["type"] == "snapshot"
            assert first["session"]["currentPage"] == 3

            seeded.update(key, {"currentPage": 4})
            assert ws.receive_json()["session"]["currentPage"] == 4

            seeded.update(key, {"status": "completed", "endTime": "2026-10-17T11:00:00+00:00"})
            assert ws.receive_json()["session"]["status"] == "completed"

    def test_stream_rejects_bad_token(self, test_client, started):
        """Test handshakes without a valid token are refused."""
        with pytest.raises(WebSocketDisconnect):
            with test_client.websocket_connect(f"/sessions/{started['id']}/stream?token=bad") as ws:
                ws.receive_json()

    def test_stream_rejects_outsider(self, test_client, outsider, started):
        """Test users outside the session are refused."""
        token = create_access_token(outsider)
        with pytest.raises(WebSocketDisconnect):
            with test_client.websocket_connect(f"/sessions/{started['id']}/stream?token={token}") as ws:
                ws.receive_json()
