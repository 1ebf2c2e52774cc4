"""
Call timeline client. Fetches who was present in a Stream video call, and when, so settlement can
bill only the time both parties were connected.

Use StreamTimelineClient.from_settings() in production; tests pass any object with
get_presence_timeline(call_reference) -> CallTimeline.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import jwt
import requests
from django.conf import settings

from consultations.presence import InvalidIntervalError, PresenceInterval, parse_timestamp
from consultations.services.order_service import CallReferenceError, parse_call_reference

logger = logging.getLogger(__name__)

SERVER_TOKEN_TTL_SECONDS = 3600


class TimelineUnavailable(Exception):
    """Raised when the call provider cannot be reached or answers with an error."""
    pass


@dataclass(frozen=True)
class ParticipantTimeline:
    party_id: str
    intervals: List[PresenceInterval] = field(default_factory=list)


@dataclass(frozen=True)
class CallTimeline:
    """found=False means the call exists but no session was recorded (nobody ever joined)."""

    found: bool
    participants: List[ParticipantTimeline] = field(default_factory=list)

    def intervals_for(self, party_id: str) -> List[PresenceInterval]:
        party_id = str(party_id)
        intervals = []
        for participant in self.participants:
            if participant.party_id == party_id:
                intervals.extend(participant.intervals)
        return intervals


def parse_call_payload(payload: dict) -> CallTimeline:
    """
    Build a CallTimeline from a Stream `GET /call/{type}/{id}` body:
    call.session.participants[] with user_id (or user.id), joined_at, left_at.
    Participants without an id or join time are skipped.
    """
    call = (payload or {}).get("call") or {}
    session = call.get("session")
    if not session:
        return CallTimeline(found=False)

    by_party: Dict[str, List[PresenceInterval]] = {}
    for raw in session.get("participants") or []:
        party_id = raw.get("user_id") or (raw.get("user") or {}).get("id")
        if not party_id:
            continue
        try:
            joined_at = parse_timestamp(raw.get("joined_at"))
            left_at = parse_timestamp(raw["left_at"]) if raw.get("left_at") else None
            interval = PresenceInterval(joined_at=joined_at, left_at=left_at)
        except InvalidIntervalError as e:
            logger.warning("parse_call_payload: skipping participant %s: %s", party_id, e)
            continue
        by_party.setdefault(str(party_id), []).append(interval)

    participants = [ParticipantTimeline(party_id=pid, intervals=intervals) for pid, intervals in by_party.items()]
    return CallTimeline(found=True, participants=participants)


class StreamTimelineClient:
    """Server-side Stream video client. Authenticates with a short-lived HS256 server token."""

    def __init__(self, api_key: str, api_secret: str, base_url: str, timeout: float = 15.0, session=None):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "StreamTimelineClient":
        return cls(
            api_key=getattr(settings, "STREAM_API_KEY", "") or "",
            api_secret=getattr(settings, "STREAM_API_SECRET", "") or "",
            base_url=getattr(settings, "STREAM_API_BASE_URL", "https://video.stream-io-api.com/api/v2/video"),
            timeout=float(getattr(settings, "STREAM_TIMEOUT_SECONDS", 15)),
        )

    def is_configured(self) -> bool:
        return bool(self.api_key.strip() and self.api_secret.strip())

    def server_token(self, now: Optional[int] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            "user_id": "server",
            "iat": issued_at,
            "exp": issued_at + SERVER_TOKEN_TTL_SECONDS,
        }
        return jwt.encode(payload, self.api_secret, algorithm="HS256")

    def get_presence_timeline(self, call_reference: str) -> CallTimeline:
        """Raises TimelineUnavailable on any transport, HTTP or payload error (404 included)."""
        if not self.is_configured():
            raise TimelineUnavailable("Stream is not configured: STREAM_API_KEY / STREAM_API_SECRET missing")
        try:
            call_type, call_id = parse_call_reference(call_reference)
        except CallReferenceError as e:
            raise TimelineUnavailable(str(e)) from e

        url = f"{self.base_url}/call/{call_type}/{call_id}"
        headers = {
            "Authorization": self.server_token(),
            "stream-auth-type": "jwt",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.get(url, params={"api_key": self.api_key}, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("get_presence_timeline: request failed call=%s: %s", call_reference, e)
            raise TimelineUnavailable(f"Stream request failed: {e}") from e

        if response.status_code == 404:
            raise TimelineUnavailable(f"Call not found: {call_type}:{call_id}")
        if response.status_code != 200:
            logger.warning(
                "get_presence_timeline: unexpected status call=%s status=%s", call_reference, response.status_code
            )
            raise TimelineUnavailable(f"Stream API returned {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise TimelineUnavailable(f"Invalid Stream response: {e}") from e
        return parse_call_payload(payload)
