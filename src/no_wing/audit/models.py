"""Data models for audit events and compliance reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from no_wing.utils.time import ensure_utc, parse_timestamp


class EventType(str, Enum):
    CREDENTIAL_SWITCH = "credential-switch"
    ROLE_ASSUMPTION = "role-assumption"
    PERMISSION_REQUEST = "permission-request"
    AWS_OPERATION = "aws-operation"
    ERROR = "error"


class ActorType(str, Enum):
    HUMAN = "human"
    AGENT = "agent"


class PermissionAction(str, Enum):
    """``operation.action`` values used by permission-request events."""

    REQUEST = "request-permissions"
    APPROVE = "approve-request"
    DENY = "deny-request"
    EXPIRE = "expire-request"


DECISION_ACTIONS = frozenset({PermissionAction.APPROVE.value, PermissionAction.DENY.value})

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Actor:
    type: ActorType
    identity: str
    session_id: str | None = None

    @classmethod
    def human(cls, identity: str) -> "Actor":
        return cls(type=ActorType.HUMAN, identity=identity)

    @classmethod
    def agent(cls, identity: str = "agent", session_id: str | None = None) -> "Actor":
        return cls(type=ActorType.AGENT, identity=identity, session_id=session_id)


@dataclass(frozen=True)
class AuditOperation:
    service: str
    action: str
    resources: tuple[str, ...] = ()
    parameters: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class AuditResult:
    success: bool
    error_message: str | None = None


@dataclass(frozen=True)
class AuditContext:
    request_id: str | None = None
    correlation_id: str | None = None
    risk_tier: str | None = None


@dataclass(frozen=True)
class AuditEvent:
    """One immutable line of the audit log.

    ``event_id``, ``timestamp``, ``writer_id`` and ``sequence`` are stamped by
    :class:`~no_wing.audit.log.AuditLog` when the event is appended.
    """

    event_type: EventType
    actor: Actor
    operation: AuditOperation
    result: AuditResult
    context: AuditContext = field(default_factory=AuditContext)
    event_id: str = ""
    timestamp: datetime | None = None
    writer_id: str = ""
    sequence: int = 0

    @property
    def sort_key(self) -> tuple[datetime, str, int]:
        ts = ensure_utc(self.timestamp) if self.timestamp else _EPOCH
        return (ts, self.writer_id, self.sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "sequence": self.sequence,
            "writer_id": self.writer_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "event_type": self.event_type.value,
            "actor": {
                "type": self.actor.type.value,
                "identity": self.actor.identity,
                "session_id": self.actor.session_id,
            },
            "operation": {
                "service": self.operation.service,
                "action": self.operation.action,
                "resources": list(self.operation.resources),
                "parameters": self.operation.parameters,
            },
            "result": {
                "success": self.result.success,
                "error_message": self.result.error_message,
            },
            "context": {
                "request_id": self.context.request_id,
                "correlation_id": self.context.correlation_id,
                "risk_tier": self.context.risk_tier,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEvent":
        actor = data.get("actor") or {}
        operation = data.get("operation") or {}
        result = data.get("result") or {}
        context = data.get("context") or {}
        timestamp = data.get("timestamp")
        return cls(
            event_type=EventType(data["event_type"]),
            actor=Actor(
                type=ActorType(actor["type"]),
                identity=str(actor.get("identity", "")),
                session_id=actor.get("session_id"),
            ),
            operation=AuditOperation(
                service=str(operation.get("service", "")),
                action=str(operation.get("action", "")),
                resources=tuple(operation.get("resources") or ()),
                parameters=dict(operation.get("parameters") or {}),
            ),
            result=AuditResult(
                success=bool(result.get("success", False)),
                error_message=result.get("error_message"),
            ),
            context=AuditContext(
                request_id=context.get("request_id"),
                correlation_id=context.get("correlation_id"),
                risk_tier=context.get("risk_tier"),
            ),
            event_id=str(data.get("event_id", "")),
            timestamp=parse_timestamp(timestamp) if timestamp else None,
            writer_id=str(data.get("writer_id", "")),
            sequence=int(data.get("sequence", 0)),
        )


@dataclass
class AuditQuery:
    """Filter for :meth:`AuditLog.query`. The time window is ``[start, end)``."""

    event_types: list[str] | None = None
    actor_types: list[str] | None = None
    services: list[str] | None = None
    success: bool | None = None
    start: datetime | None = None
    end: datetime | None = None
    request_id: str | None = None
    limit: int | None = None

    def matches(self, event: AuditEvent) -> bool:
        if self.event_types and event.event_type.value not in self.event_types:
            return False
        if self.actor_types and event.actor.type.value not in self.actor_types:
            return False
        if self.services and event.operation.service not in self.services:
            return False
        if self.success is not None and event.result.success != self.success:
            return False
        if self.request_id is not None and event.context.request_id != self.request_id:
            return False
        if self.start is not None or self.end is not None:
            if event.timestamp is None:
                return False
            ts = ensure_utc(event.timestamp)
            if self.start is not None and ts < ensure_utc(self.start):
                return False
            if self.end is not None and ts >= ensure_utc(self.end):
                return False
        return True


@dataclass(frozen=True)
class ComplianceViolation:
    violation_id: str
    type: str
    severity: str
    description: str
    event_id: str
    recommendation: str


@dataclass(frozen=True)
class ComplianceSummary:
    total_events: int
    human_actions: int
    agent_actions: int
    errors: int
    permission_requests: int


@dataclass(frozen=True)
class ComplianceReport:
    report_id: str
    generated_at: datetime
    start: datetime
    end: datetime
    summary: ComplianceSummary
    violations: list[ComplianceViolation]
    events: list[AuditEvent]

    def to_dict(self, include_events: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "report_id": self.report_id,
            "generated_at": self.generated_at.isoformat(),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "summary": {
                "total_events": self.summary.total_events,
                "human_actions": self.summary.human_actions,
                "agent_actions": self.summary.agent_actions,
                "errors": self.summary.errors,
                "permission_requests": self.summary.permission_requests,
            },
            "violations": [
                {
                    "violation_id": v.violation_id,
                    "type": v.type,
                    "severity": v.severity,
                    "description": v.description,
                    "event_id": v.event_id,
                    "recommendation": v.recommendation,
                }
                for v in self.violations
            ],
        }
        if include_events:
            data["events"] = [event.to_dict() for event in self.events]
        return data
