"""Cross-check of the local audit log against CloudTrail.

Every successful local role assumption should appear in CloudTrail as an
``AssumeRole`` event carrying the same RoleSessionName. Recent assumptions
(inside the delivery grace period) are skipped because CloudTrail delivers
events with a delay of several minutes.

``LookupEvents`` returns events newest first. When the lookup stops at
``max_events`` before reaching the window start, only local assumptions at
or after the oldest returned event are checked and the rest are reported as
a warning.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from no_wing.audit.log import AuditLog
from no_wing.audit.models import AuditQuery, EventType
from no_wing.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_ASSUMED_ROLE_MARKER = ":assumed-role/"


@dataclass(frozen=True)
class TrailEvent:
    event_id: str
    event_name: str
    event_time: datetime
    username: str = ""
    event_source: str = ""
    resources: tuple[str, ...] = ()
    session_name: str = ""

    def session_names(self) -> set[str]:
        """RoleSessionNames this event records, compared exactly."""
        names = {self.session_name} if self.session_name else set()
        for resource in self.resources:
            if _ASSUMED_ROLE_MARKER in resource:
                names.add(resource.rsplit("/", 1)[-1])
        return names


@dataclass
class TrailLookup:
    events: list[TrailEvent] = field(default_factory=list)
    truncated: bool = False


class TrailProvider(Protocol):
    async def list_recent_events(self, start: datetime, end: datetime) -> TrailLookup: ...


class CloudTrailError(Exception):
    pass


class CloudTrailProvider:
    """Reads ``AssumeRole`` events through ``cloudtrail:LookupEvents``."""

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        max_events: int = 1000,
        event_name: str = "AssumeRole",
    ) -> None:
        self._region = region
        self._profile = profile
        self._max_events = max_events
        self._event_name = event_name
        self._config = Config(connect_timeout=5, read_timeout=15, retries={"max_attempts": 2})
        self._client: Any = None
        self._lock = threading.Lock()

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None:
                session = boto3.session.Session(profile_name=self._profile)
                self._client = session.client(
                    "cloudtrail", region_name=self._region, config=self._config
                )
            return self._client

    async def list_recent_events(self, start: datetime, end: datetime) -> TrailLookup:
        return await asyncio.to_thread(self._list_recent_events_sync, start, end)

    def _list_recent_events_sync(self, start: datetime, end: datetime) -> TrailLookup:
        client = self._get_client()
        events: list[TrailEvent] = []
        params: dict[str, Any] = {
            "StartTime": start,
            "EndTime": end,
            "LookupAttributes": [
                {"AttributeKey": "EventName", "AttributeValue": self._event_name}
            ],
            "MaxResults": 50,
        }
        token: str | None = None
        try:
            while len(events) < self._max_events:
                resp = client.lookup_events(**params)
                for raw in resp.get("Events", []) or []:
                    events.append(_trail_event(raw))
                token = resp.get("NextToken")
                if not token:
                    break
                params["NextToken"] = token
        except (ClientError, BotoCoreError) as exc:
            raise CloudTrailError(f"CloudTrail lookup failed: {exc}") from exc

        truncated = bool(token) or len(events) > self._max_events
        if truncated:
            logger.info(
                "CloudTrail lookup stopped at %d %s events", self._max_events, self._event_name
            )
        return TrailLookup(events=events[: self._max_events], truncated=truncated)


def _session_name_from_record(raw: dict[str, Any]) -> str:
    record = raw.get("CloudTrailEvent")
    if not record:
        return ""
    try:
        parameters = json.loads(record).get("requestParameters") or {}
    except (ValueError, AttributeError):
        return ""
    return str(parameters.get("roleSessionName") or "")


def _trail_event(raw: dict[str, Any]) -> TrailEvent:
    return TrailEvent(
        event_id=str(raw.get("EventId", "")),
        event_name=str(raw.get("EventName", "")),
        event_time=ensure_utc(raw["EventTime"]),
        username=str(raw.get("Username", "")),
        event_source=str(raw.get("EventSource", "")),
        resources=tuple(
            str(r.get("ResourceName", "")) for r in raw.get("Resources", []) or []
        ),
        session_name=_session_name_from_record(raw),
    )


@dataclass
class CloudTrailStatus:
    is_configured: bool
    recent_events: int
    last_event_time: datetime | None = None
    checked_assumptions: int = 0
    unchecked_assumptions: int = 0
    mismatches: int = 0
    truncated: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_configured": self.is_configured,
            "recent_events": self.recent_events,
            "last_event_time": self.last_event_time.isoformat() if self.last_event_time else None,
            "checked_assumptions": self.checked_assumptions,
            "unchecked_assumptions": self.unchecked_assumptions,
            "mismatches": self.mismatches,
            "truncated": self.truncated,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


async def verify_cloudtrail_integration(
    audit_log: AuditLog,
    provider: TrailProvider,
    window: timedelta = timedelta(hours=24),
    grace: timedelta = timedelta(minutes=15),
    now: datetime | None = None,
    timeout_seconds: float = 30.0,
) -> CloudTrailStatus:
    """Compare local role assumptions with CloudTrail; never raises."""
    end = ensure_utc(now or utc_now())
    start = end - window

    try:
        lookup = await asyncio.wait_for(
            provider.list_recent_events(start, end), timeout=timeout_seconds
        )
    except asyncio.TimeoutError:
        return CloudTrailStatus(
            is_configured=False,
            recent_events=0,
            errors=[f"CloudTrail verification timed out after {timeout_seconds:g}s"],
        )
    except Exception as exc:
        logger.warning("CloudTrail verification failed: %s", exc)
        return CloudTrailStatus(
            is_configured=False,
            recent_events=0,
            errors=[f"CloudTrail verification failed: {exc}"],
        )

    trail_events = lookup.events
    status = CloudTrailStatus(
        is_configured=True,
        recent_events=len(trail_events),
        last_event_time=max((e.event_time for e in trail_events), default=None),
        truncated=lookup.truncated,
    )

    covered_from = start
    if lookup.truncated and trail_events:
        covered_from = max(start, min(e.event_time for e in trail_events))

    trail_names: set[str] = set()
    for event in trail_events:
        trail_names |= event.session_names()

    local = audit_log.query(
        AuditQuery(
            event_types=[EventType.ROLE_ASSUMPTION.value],
            success=True,
            start=start,
            end=end - grace,
        )
    )
    missing: list[str] = []
    for event in local:
        if event.operation.parameters.get("reused"):
            continue
        session_name = str(event.operation.parameters.get("session_name") or "")
        if not session_name:
            continue
        if event.timestamp is not None and ensure_utc(event.timestamp) < covered_from:
            status.unchecked_assumptions += 1
            continue
        status.checked_assumptions += 1
        if session_name not in trail_names:
            missing.append(session_name)

    if status.unchecked_assumptions:
        status.warnings.append(
            f"CloudTrail returned only the newest {len(trail_events)} AssumeRole events; "
            f"{status.unchecked_assumptions} local assumptions before "
            f"{covered_from.isoformat()} were not checked"
        )
    status.mismatches = len(missing)
    if missing:
        status.errors.append(
            f"{len(missing)} local role assumptions not found in CloudTrail: "
            + ", ".join(sorted(missing)[:5])
        )
    return status
