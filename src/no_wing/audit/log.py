"""Append-only JSONL audit log.

Each event is one JSON line written with a single ``os.write`` on an
``O_APPEND`` descriptor while holding both a process-wide lock and an
exclusive ``flock`` on the file, so concurrent writers (threads or separate
CLI processes) never interleave partial lines. Events are stamped with
``(timestamp, writer_id, sequence)``; the triple is unique per log.
"""

from __future__ import annotations

import dataclasses
import fcntl
import itertools
import json
import logging
import os
import socket
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from no_wing.audit.compliance import ComplianceAnalyzer
from no_wing.audit.models import (
    Actor,
    AuditContext,
    AuditEvent,
    AuditOperation,
    AuditQuery,
    AuditResult,
    ComplianceReport,
    EventType,
)
from no_wing.errors import NoWingError
from no_wing.utils.masking import redact_credentials
from no_wing.utils.serialization import json_default
from no_wing.utils.time import utc_now

logger = logging.getLogger(__name__)


class AuditWriteFailure(NoWingError):
    """An audit event could not be persisted.

    The operation that produced the event must be treated as not having
    happened.
    """

    default_hint = "check that the audit log path is writable (NO_WING_AUDIT_LOG)"


def _new_writer_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class AuditLog:
    def __init__(
        self,
        path: str,
        writer_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = Path(path)
        self._writer_id = writer_id or _new_writer_id()
        self._clock = clock
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def writer_id(self) -> str:
        return self._writer_id

    def append(self, event: AuditEvent) -> AuditEvent:
        """Stamp and persist ``event``; raises :class:`AuditWriteFailure`."""
        with self._lock:
            stamped = dataclasses.replace(
                event,
                event_id=event.event_id or uuid.uuid4().hex,
                timestamp=event.timestamp or self._clock(),
                writer_id=self._writer_id,
                sequence=next(self._sequence),
                operation=dataclasses.replace(
                    event.operation,
                    parameters=redact_credentials(event.operation.parameters),
                ),
            )
            try:
                line = json.dumps(stamped.to_dict(), default=json_default, sort_keys=True) + "\n"
            except (TypeError, ValueError) as exc:
                raise AuditWriteFailure(
                    f"Audit event is not serializable: {exc}", code="audit_encode"
                ) from exc
            self._write_line(line.encode("utf-8"))

        logger.debug(
            "Audit event %s appended (type=%s, seq=%d)",
            stamped.event_id,
            stamped.event_type.value,
            stamped.sequence,
        )
        return stamped

    def _write_line(self, data: bytes) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        except OSError as exc:
            raise AuditWriteFailure(
                f"Cannot open audit log {self._path}: {exc}", code="audit_open"
            ) from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                written = os.write(fd, data)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
            if written != len(data):
                raise AuditWriteFailure(
                    f"Short write to audit log {self._path}: {written}/{len(data)} bytes",
                    code="audit_short_write",
                )
        except OSError as exc:
            raise AuditWriteFailure(
                f"Cannot write audit log {self._path}: {exc}", code="audit_write"
            ) from exc
        finally:
            os.close(fd)

    def _read_all(self) -> list[AuditEvent]:
        if not self._path.exists():
            return []
        events: list[AuditEvent] = []
        with self._path.open("r", encoding="utf-8") as handle:
            for lineno, raw in enumerate(handle, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    events.append(AuditEvent.from_dict(json.loads(raw)))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning("Skipping malformed audit line %s:%d: %s", self._path, lineno, exc)
        return events

    def query(self, query: AuditQuery | None = None) -> list[AuditEvent]:
        """Matching events, newest first. ``limit`` applies after sorting."""
        query = query or AuditQuery()
        matched = [event for event in self._read_all() if query.matches(event)]
        matched.sort(key=lambda event: event.sort_key, reverse=True)
        if query.limit is not None:
            matched = matched[: max(query.limit, 0)]
        return matched

    def generate_compliance_report(
        self,
        start: datetime,
        end: datetime,
        analyzer: ComplianceAnalyzer | None = None,
    ) -> ComplianceReport:
        analyzer = analyzer or ComplianceAnalyzer()
        events = self.query(AuditQuery(start=start, end=end))
        return analyzer.build_report(events, start, end)

    def log_role_assumption(
        self,
        role_arn: str,
        session_name: str,
        success: bool,
        actor: Actor | None = None,
        error: str | None = None,
        reused: bool = False,
        request_id: str | None = None,
        expiration: datetime | None = None,
    ) -> AuditEvent:
        parameters: dict[str, Any] = {"session_name": session_name, "reused": reused}
        if expiration is not None:
            parameters["expiration"] = expiration.isoformat()
        return self.append(
            AuditEvent(
                event_type=EventType.ROLE_ASSUMPTION,
                actor=actor or Actor.agent(),
                operation=AuditOperation(
                    service="sts",
                    action="AssumeRole",
                    resources=(role_arn,) if role_arn else (),
                    parameters=parameters,
                ),
                result=AuditResult(success=success, error_message=error),
                context=AuditContext(request_id=request_id),
            )
        )

    def log_credential_switch(
        self,
        from_context: str | None,
        to_context: str,
        identity: str,
        success: bool,
        actor: Actor | None = None,
        error: str | None = None,
    ) -> AuditEvent:
        return self.append(
            AuditEvent(
                event_type=EventType.CREDENTIAL_SWITCH,
                actor=actor or Actor.human(identity or "unknown"),
                operation=AuditOperation(
                    service="sts",
                    action="SwitchContext",
                    parameters={"from": from_context, "to": to_context, "identity": identity},
                ),
                result=AuditResult(success=success, error_message=error),
            )
        )

    def log_aws_operation(
        self,
        service: str,
        action: str,
        resources: tuple[str, ...] | list[str],
        success: bool,
        actor: Actor | None = None,
        risk_tier: str | None = None,
        request_id: str | None = None,
        error: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> AuditEvent:
        return self.append(
            AuditEvent(
                event_type=EventType.AWS_OPERATION,
                actor=actor or Actor.agent(),
                operation=AuditOperation(
                    service=service,
                    action=action,
                    resources=tuple(resources),
                    parameters=dict(parameters or {}),
                ),
                result=AuditResult(success=success, error_message=error),
                context=AuditContext(request_id=request_id, risk_tier=risk_tier),
            )
        )

    def log_permission_event(
        self,
        permission_action: str,
        request_id: str,
        requested_action: str,
        resource: str,
        actor: Actor,
        risk_tier: str | None = None,
        success: bool = True,
        error: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> AuditEvent:
        service = requested_action.partition(":")[0] if ":" in requested_action else ""
        params = {"requested_action": requested_action}
        params.update(parameters or {})
        return self.append(
            AuditEvent(
                event_type=EventType.PERMISSION_REQUEST,
                actor=actor,
                operation=AuditOperation(
                    service=service,
                    action=permission_action,
                    resources=(resource,),
                    parameters=params,
                ),
                result=AuditResult(success=success, error_message=error),
                context=AuditContext(request_id=request_id, risk_tier=risk_tier),
            )
        )

    def log_error(
        self,
        service: str,
        action: str,
        error: str,
        actor: Actor | None = None,
        request_id: str | None = None,
    ) -> AuditEvent:
        return self.append(
            AuditEvent(
                event_type=EventType.ERROR,
                actor=actor or Actor.agent(),
                operation=AuditOperation(service=service, action=action),
                result=AuditResult(success=False, error_message=error),
                context=AuditContext(request_id=request_id),
            )
        )
