"""Records shared by the permission governance components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from no_wing.aws_credentials.cache import AssumedSession
from no_wing.domain.roles import CallerIdentity, Role
from no_wing.utils.time import parse_timestamp


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class OperationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    COMPLETED = "completed"
    FAILED = "failed"


class ElevationMethod(str, Enum):
    DIRECT = "direct"
    ROLE_SWITCH = "role-switch"
    APPROVAL_REQUIRED = "approval-required"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None


@dataclass(frozen=True)
class PermissionRequest:
    request_id: str
    requested_action: str
    target_resource_pattern: str
    justification: str
    risk_tier: RiskTier
    created_at: datetime
    requires_approval: bool = True
    status: RequestStatus = RequestStatus.PENDING
    approver: str | None = None
    decided_at: datetime | None = None
    service: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "requested_action": self.requested_action,
            "target_resource_pattern": self.target_resource_pattern,
            "justification": self.justification,
            "risk_tier": self.risk_tier.value,
            "requires_approval": self.requires_approval,
            "created_at": _iso(self.created_at),
            "status": self.status.value,
            "approver": self.approver,
            "decided_at": _iso(self.decided_at),
            "service": self.service,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PermissionRequest":
        return cls(
            request_id=data["request_id"],
            requested_action=data["requested_action"],
            target_resource_pattern=data["target_resource_pattern"],
            justification=data.get("justification") or "",
            risk_tier=RiskTier(data["risk_tier"]),
            created_at=parse_timestamp(data["created_at"]),
            requires_approval=bool(data.get("requires_approval", True)),
            status=RequestStatus(data.get("status", "pending")),
            approver=data.get("approver"),
            decided_at=_parse(data.get("decided_at")),
            service=data.get("service") or "",
        )


@dataclass(frozen=True)
class OperationLog:
    """Working-state record of one requested operation, keyed by request id."""

    request_id: str
    action: str
    resource: str
    status: OperationStatus
    started_at: datetime
    approver: str | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    rollback_required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "action": self.action,
            "resource": self.resource,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "approver": self.approver,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "rollback_required": self.rollback_required,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationLog":
        return cls(
            request_id=data["request_id"],
            action=data["action"],
            resource=data["resource"],
            status=OperationStatus(data["status"]),
            started_at=parse_timestamp(data["started_at"]),
            approver=data.get("approver"),
            duration_ms=data.get("duration_ms"),
            error_message=data.get("error_message"),
            rollback_required=bool(data.get("rollback_required", False)),
        )


@dataclass
class ElevationResult:
    success: bool
    method: ElevationMethod
    message: str
    risk_tier: RiskTier
    alternatives: list[str] = field(default_factory=list)
    request_id: str | None = None
    operation_id: str | None = None
    role: Role | None = None
    session: AssumedSession | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "method": self.method.value,
            "message": self.message,
            "risk_tier": self.risk_tier.value,
            "alternatives": list(self.alternatives),
            "request_id": self.request_id,
            "operation_id": self.operation_id,
            "role_arn": self.role.role_arn if self.role else None,
            "session_expiration": _iso(self.session.expiration) if self.session else None,
        }


@dataclass(frozen=True)
class RoleTestResult:
    role_arn: str
    success: bool
    identity: CallerIdentity | None = None
    session_name: str | None = None
    expiration: datetime | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class Commit:
    branch: str
    commit_hash: str
    message: str
    files: tuple[str, ...]
    created_at: datetime
    verified: bool = False
    approver: str | None = None
    verified_at: datetime | None = None

    @property
    def short_hash(self) -> str:
        return self.commit_hash[:8]

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "commit_hash": self.commit_hash,
            "message": self.message,
            "files": list(self.files),
            "created_at": _iso(self.created_at),
            "verified": self.verified,
            "approver": self.approver,
            "verified_at": _iso(self.verified_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Commit":
        return cls(
            branch=data["branch"],
            commit_hash=data["commit_hash"],
            message=data.get("message") or "",
            files=tuple(data.get("files") or ()),
            created_at=parse_timestamp(data["created_at"]),
            verified=bool(data.get("verified", False)),
            approver=data.get("approver"),
            verified_at=_parse(data.get("verified_at")),
        )
