"""Google Calendar / Meet provisioning.

Creates time-boxed calendar events carrying a Meet conference on the
teacher's primary calendar, using a delegated OAuth access token that the
teacher granted with calendar scopes. Tokens live in the ``meetCredentials``
collection and are cached in-process per teacher; a cached token is reused
only while it is outside the refresh buffer before expiry.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
import threading
import uuid

import requests
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google.auth.exceptions import GoogleAuthError

from tutorsync.core.config import settings
from tutorsync.core.errors import MeetingCredentialsMissing, MeetingProvisionFailed
from tutorsync.core.logging import get_logger, LogTimer
from tutorsync.infrastructure.store import DocumentStore, doc_key, utcnow_iso

logger = get_logger(__name__)

CREDENTIALS_COLLECTION = "meetCredentials"
CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def credentials_are_fresh(record: Optional[Dict[str, Any]], buffer_seconds: int) -> bool:
    """True when the stored token exists and expires after now + buffer."""
    if not record or not record.get("accessToken"):
        return False
    expires_at = _parse_iso(record.get("expiresAt"))
    if expires_at is None:
        return False
    return datetime.now(timezone.utc) < expires_at - timedelta(seconds=buffer_seconds)


class MeetCredentialStore:
    """Delegated calendar credentials per teacher, with an in-process cache."""

    def __init__(self, store: DocumentStore, buffer_seconds: Optional[int] = None):
        self.store = store
        self.buffer_seconds = (
            settings.meet_token_refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
        )
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def store_credentials(
        self,
        teacher_id: str,
        access_token: str,
        expires_at: Union[str, datetime],
        refresh_token: Optional[str] = None,
        associated_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Persist a delegated token; ``expires_at`` must be an ISO-8601 instant.

        Raises:
            ValueError: If ``expires_at`` cannot be parsed
        """
        expiry = expires_at if isinstance(expires_at, datetime) else _parse_iso(expires_at)
        if expiry is None:
            raise ValueError(f"Invalid credential expiry: {expires_at!r}")
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        record = {
            "accessToken": access_token,
            "refreshToken": refresh_token,
            "expiresAt": expiry.isoformat(),
            "associatedEmail": associated_email,
            "updatedAt": utcnow_iso(),
        }
        self.store.set(doc_key(CREDENTIALS_COLLECTION, teacher_id), record)
        with self._lock:
            self._cache[teacher_id] = record
        logger.info("Stored Meet credentials", extra={"user_id": teacher_id})
        return record

    def remove_credentials(self, teacher_id: str) -> None:
        self.store.delete(doc_key(CREDENTIALS_COLLECTION, teacher_id))
        with self._lock:
            self._cache.pop(teacher_id, None)

    def get_access_token(self, teacher_id: str) -> str:
        """Return a usable access token for the teacher or raise.

        Raises:
            MeetingCredentialsMissing: No stored or refreshable credential
        """
        with self._lock:
            cached = self._cache.get(teacher_id)
        if credentials_are_fresh(cached, self.buffer_seconds):
            return cached["accessToken"]

        record = self.store.get(doc_key(CREDENTIALS_COLLECTION, teacher_id))
        if credentials_are_fresh(record, self.buffer_seconds):
            with self._lock:
                self._cache[teacher_id] = record
            return record["accessToken"]

        if record and record.get("refreshToken"):
            return self._refresh(teacher_id, record)

        raise MeetingCredentialsMissing(teacher_id)

    def _refresh(self, teacher_id: str, record: Dict[str, Any]) -> str:
        if not (settings.google_oauth_client_id and settings.google_oauth_client_secret):
            logger.warning("Stored Meet token expired and no OAuth client is configured for refresh",
                           extra={"user_id": teacher_id})
            raise MeetingCredentialsMissing(teacher_id)

        creds = Credentials(
            token=record.get("accessToken"),
            refresh_token=record["refreshToken"],
            token_uri=settings.google_token_uri,
            client_id=settings.google_oauth_client_id,
            client_secret=settings.google_oauth_client_secret,
            scopes=CALENDAR_SCOPES,
        )
        try:
            with LogTimer(logger, "meet_token_refresh"):
                creds.refresh(Request())
        except GoogleAuthError as e:
            raise MeetingProvisionFailed(f"Failed to refresh Google credentials: {e}") from e

        expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else (
            datetime.now(timezone.utc) + timedelta(hours=1)
        )
        self.store_credentials(
            teacher_id,
            access_token=creds.token,
            expires_at=expiry.isoformat(),
            refresh_token=creds.refresh_token or record["refreshToken"],
            associated_email=record.get("associatedEmail"),
        )
        return creds.token


class GoogleMeetProvisioner:
    """Meeting provisioner backed by the Calendar v3 REST API.

    Example:
        >>> provisioner = GoogleMeetProvisioner(MeetCredentialStore(store))
        >>> meeting = provisioner.create_meeting(
        ...     "Teaching Session", None, 60, ["s1@school.com"], "t@school.com",
        ...     teacher_id="teacher-1")
        >>> meeting["link"]
        'https://meet.google.com/abc-defg-hij'
    """

    def __init__(
        self,
        credentials: MeetCredentialStore,
        http: Optional[requests.Session] = None,
        api_base: Optional[str] = None,
        time_zone: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.credentials = credentials
        self.http = http or requests.Session()
        self.api_base = (api_base or settings.google_calendar_api_base).rstrip("/")
        self.time_zone = time_zone or settings.meet_timezone
        self.timeout = timeout or settings.meet_request_timeout_seconds

    def _events_url(self, event_id: Optional[str] = None) -> str:
        url = f"{self.api_base}/calendars/primary/events"
        return f"{url}/{event_id}" if event_id else url

    def _call(self, method: str, teacher_id: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        token = self.credentials.get_access_token(teacher_id)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            with LogTimer(logger, f"calendar_{method.lower()}"):
                response = self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise MeetingProvisionFailed(f"Calendar API unreachable: {e}") from e

        if not response.ok:
            try:
                detail = response.json().get("error", {}).get("message")
            except ValueError:
                detail = None
            raise MeetingProvisionFailed(detail or f"Calendar API error {response.status_code}")

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MeetingProvisionFailed(f"Calendar API returned an unreadable body: {e}") from e

    def _event_window(self, start_iso: Optional[str], duration_minutes: int) -> Dict[str, Dict[str, str]]:
        start = _parse_iso(start_iso) or datetime.now(timezone.utc)
        end = start + timedelta(minutes=duration_minutes)
        return {
            "start": {"dateTime": start.isoformat(), "timeZone": self.time_zone},
            "end": {"dateTime": end.isoformat(), "timeZone": self.time_zone},
        }

    @staticmethod
    def _to_resource(event: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "link": event.get("hangoutLink"),
            "eventId": event.get("id"),
            "start": event.get("start", {}).get("dateTime"),
            "end": event.get("end", {}).get("dateTime"),
            "attendees": [a.get("email") for a in event.get("attendees", []) if a.get("email")],
        }

    def create_meeting(
        self,
        title: str,
        start_iso: Optional[str],
        duration_minutes: int,
        attendee_emails: List[str],
        organizer_email: Optional[str],
        teacher_id: str,
    ) -> Dict[str, Any]:
        """Create a calendar event with a Meet conference.

        Returns:
            Dict with link, eventId, start, end, attendees

        Raises:
            MeetingProvisionFailed: On credential, network or API errors
        """
        if duration_minutes <= 0:
            raise MeetingProvisionFailed("Meeting duration must be positive")

        event = {
            "summary": title,
            **self._event_window(start_iso, duration_minutes),
            "attendees": [{"email": e} for e in attendee_emails if e],
            "conferenceData": {
                "createRequest": {
                    "requestId": uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }
        if organizer_email:
            event["organizer"] = {"email": organizer_email}

        data = self._call(
            "POST", teacher_id, self._events_url(),
            params={"conferenceDataVersion": 1, "sendUpdates": "all"},
            json=event,
        )
        meeting = self._to_resource(data or {})
        if not meeting["link"]:
            raise MeetingProvisionFailed("Calendar event created without a Meet link")

        logger.info(f"Meet created: {meeting['eventId']}", extra={"user_id": teacher_id})
        return meeting

    def update_meeting(
        self,
        teacher_id: str,
        event_id: str,
        title: Optional[str] = None,
        start_iso: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        end_iso: Optional[str] = None,
        attendee_emails: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        patch: Dict[str, Any] = {}
        if title is not None:
            patch["summary"] = title
        if start_iso is not None and duration_minutes is not None:
            patch.update(self._event_window(start_iso, duration_minutes))
        elif end_iso is not None:
            patch["end"] = {"dateTime": end_iso, "timeZone": self.time_zone}
        if attendee_emails is not None:
            patch["attendees"] = [{"email": e} for e in attendee_emails if e]

        data = self._call(
            "PATCH", teacher_id, self._events_url(event_id),
            params={"sendUpdates": "all"}, json=patch,
        )
        return self._to_resource(data or {})

    def delete_meeting(self, teacher_id: str, event_id: str) -> bool:
        try:
            self._call("DELETE", teacher_id, self._events_url(event_id), params={"sendUpdates": "all"})
        except MeetingProvisionFailed as e:
            logger.warning(f"Failed to delete Meet {event_id}: {e}", extra={"user_id": teacher_id})
            return False
        return True

    def get_meeting(self, teacher_id: str, event_id: str) -> Dict[str, Any]:
        data = self._call("GET", teacher_id, self._events_url(event_id))
        return self._to_resource(data or {})
