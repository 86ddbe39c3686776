"""Human-in-the-loop approval of permission requests.

State machine per request::

    pending --approve(approver)--> approved
    pending --deny(approver)-----> denied
    pending --expire-------------> expired   (only when a pending TTL is set)

Terminal states never change. Each successful transition appends exactly
one ``permission-request`` audit event; if that append fails the transition
is undone and the :class:`AuditWriteFailure` propagates.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from no_wing.audit.log import AuditLog, AuditWriteFailure
from no_wing.audit.models import Actor, PermissionAction
from no_wing.domain.operations import OperationRef
from no_wing.errors import NoWingError
from no_wing.logging_utils import sanitize_log_value
from no_wing.permissions.models import (
    OperationLog,
    OperationStatus,
    PermissionRequest,
    RequestStatus,
)
from no_wing.permissions.store import RequestStore
from no_wing.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_EXPIRY_ACTOR = Actor.agent("no-wing-expiry")


class ElevationDenied(NoWingError):
    """The request was denied or expired; the operation must not proceed."""

    default_hint = "submit a new permission request if circumstances have changed"


class RequestNotFound(NoWingError):
    default_hint = "list requests with `no-wing permissions requests`"


class ApprovalPending(NoWingError):
    default_hint = "ask a human to run `no-wing permissions approve <request-id>`"


_DECISIONS = {
    RequestStatus.APPROVED: (PermissionAction.APPROVE, OperationStatus.APPROVED),
    RequestStatus.DENIED: (PermissionAction.DENY, OperationStatus.DENIED),
}


class ApprovalWorkflow:
    def __init__(
        self,
        store: RequestStore,
        audit_log: AuditLog,
        pending_ttl_seconds: int | None = None,
        agent_actor: Actor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._audit_log = audit_log
        self._pending_ttl_seconds = pending_ttl_seconds
        self._agent_actor = agent_actor or Actor.agent()
        self._clock = clock

    @property
    def pending_ttl_seconds(self) -> int | None:
        return self._pending_ttl_seconds

    def submit(self, request: PermissionRequest) -> PermissionRequest:
        """Record a new pending request and its pending operation log."""
        if not request.is_pending:
            raise ValueError(f"Only pending requests can be submitted, got {request.status.value}")
        if self._store.get(request.request_id) is not None:
            raise ValueError(f"Request {request.request_id} already exists")

        self._store.put(request)
        try:
            self._audit_log.log_permission_event(
                PermissionAction.REQUEST.value,
                request.request_id,
                request.requested_action,
                request.target_resource_pattern,
                actor=self._agent_actor,
                risk_tier=request.risk_tier.value,
                parameters={"justification": request.justification},
            )
        except AuditWriteFailure:
            self._store.delete(request.request_id)
            raise

        self._store.put_operation(
            OperationLog(
                request_id=request.request_id,
                action=request.requested_action,
                resource=request.target_resource_pattern,
                status=OperationStatus.PENDING,
                started_at=request.created_at,
            )
        )
        logger.info(
            "Permission request %s pending: %s on %s (risk=%s)",
            request.request_id,
            request.requested_action,
            sanitize_log_value(request.target_resource_pattern),
            request.risk_tier.value,
        )
        return request

    def get(self, request_id: str) -> PermissionRequest | None:
        return self._store.get(request_id)

    def list_requests(self, status: RequestStatus | None = None) -> list[PermissionRequest]:
        return self._store.list(status)

    def list_pending(self) -> list[PermissionRequest]:
        return self._store.list(RequestStatus.PENDING)

    def approve(self, request_id: str, approver: str) -> bool:
        return self._decide(request_id, approver, RequestStatus.APPROVED)

    def deny(self, request_id: str, approver: str) -> bool:
        return self._decide(request_id, approver, RequestStatus.DENIED)

    def _decide(self, request_id: str, approver: str, outcome: RequestStatus) -> bool:
        if not approver or not approver.strip():
            raise ValueError("approver is required")
        current = self._store.get(request_id)
        if current is not None and self._is_stale(current, self._clock()):
            self._expire(current, self._clock())
            return False

        decided_at = self._clock()
        updated = self._store.transition(
            request_id, RequestStatus.PENDING, outcome, approver=approver, decided_at=decided_at
        )
        if updated is None:
            logger.info(
                "Request %s not found in pending set; %s by %s ignored",
                sanitize_log_value(request_id),
                outcome.value,
                sanitize_log_value(approver),
            )
            return False

        permission_action, operation_status = _DECISIONS[outcome]
        try:
            self._audit_log.log_permission_event(
                permission_action.value,
                updated.request_id,
                updated.requested_action,
                updated.target_resource_pattern,
                actor=Actor.human(approver),
                risk_tier=updated.risk_tier.value,
            )
        except AuditWriteFailure:
            self._store.transition(request_id, outcome, RequestStatus.PENDING)
            logger.error("Audit write failed; %s of %s rolled back", outcome.value, request_id)
            raise

        self._update_operation(request_id, status=operation_status, approver=approver)
        logger.info("Request %s %s by %s", request_id, outcome.value, sanitize_log_value(approver))
        return True

    def require_approved(self, request_id: str) -> PermissionRequest:
        """Return the request if approved; raise otherwise."""
        request = self._store.get(request_id)
        if request is None:
            raise RequestNotFound(f"Permission request {request_id} not found", code="not_found")
        if request.status is RequestStatus.APPROVED:
            return request
        if request.status is RequestStatus.PENDING:
            raise ApprovalPending(
                f"Permission request {request_id} is still pending", code="pending"
            )
        raise ElevationDenied(
            f"Permission request {request_id} was {request.status.value}"
            + (f" by {request.approver}" if request.approver else ""),
            code=request.status.value,
        )

    def _is_stale(self, request: PermissionRequest, now: datetime) -> bool:
        if self._pending_ttl_seconds is None or not request.is_pending:
            return False
        age_limit = timedelta(seconds=self._pending_ttl_seconds)
        return ensure_utc(request.created_at) + age_limit <= ensure_utc(now)

    def _expire(self, request: PermissionRequest, now: datetime) -> bool:
        updated = self._store.transition(
            request.request_id, RequestStatus.PENDING, RequestStatus.EXPIRED, decided_at=now
        )
        if updated is None:
            return False
        try:
            self._audit_log.log_permission_event(
                PermissionAction.EXPIRE.value,
                updated.request_id,
                updated.requested_action,
                updated.target_resource_pattern,
                actor=_EXPIRY_ACTOR,
                risk_tier=updated.risk_tier.value,
                parameters={"pending_ttl_seconds": self._pending_ttl_seconds},
            )
        except AuditWriteFailure:
            self._store.transition(request.request_id, RequestStatus.EXPIRED, RequestStatus.PENDING)
            raise
        self._update_operation(
            request.request_id, status=OperationStatus.DENIED, error_message="request expired"
        )
        logger.info("Request %s expired after %ss", request.request_id, self._pending_ttl_seconds)
        return True

    def expire_stale_requests(self, now: datetime | None = None) -> list[PermissionRequest]:
        """Expire pending requests older than the pending TTL; no-op without one."""
        if self._pending_ttl_seconds is None:
            return []
        now = now or self._clock()
        expired: list[PermissionRequest] = []
        for request in self.list_pending():
            if self._is_stale(request, now) and self._expire(request, now):
                expired.append(self._store.get(request.request_id) or request)
        return expired

    def _update_operation(self, request_id: str, **changes: Any) -> OperationLog | None:
        log = self._store.get_operation(request_id)
        if log is None:
            return None
        updated = dataclasses.replace(log, **changes)
        self._store.put_operation(updated)
        return updated

    def open_operation(
        self,
        operation_id: str,
        action: str,
        resource: str,
        started_at: datetime | None = None,
    ) -> OperationLog:
        """Start tracking an operation that was allowed without approval.

        The log starts out ``approved`` and is closed by
        :meth:`record_operation` under the same id.
        """
        log = OperationLog(
            request_id=operation_id,
            action=action,
            resource=resource,
            status=OperationStatus.APPROVED,
            started_at=started_at or self._clock(),
        )
        self._store.put_operation(log)
        return log

    def record_operation(
        self,
        request_id: str,
        status: OperationStatus,
        duration_ms: int | None = None,
        error: str | None = None,
        actor: Actor | None = None,
    ) -> OperationLog:
        """Record how an operation ended and append its ``aws-operation`` event.

        A failed ``Create*`` action is flagged ``rollback_required``; the flag
        is surfaced to humans and nothing is reverted automatically.
        """
        if status not in (OperationStatus.COMPLETED, OperationStatus.FAILED):
            raise ValueError("status must be completed or failed")
        log = self._store.get_operation(request_id)
        if log is None:
            raise RequestNotFound(f"No operation recorded for {request_id}", code="not_found")

        ref = OperationRef.parse(log.action)
        rollback_required = status is OperationStatus.FAILED and ref.verb == "Create"
        request = self._store.get(request_id)

        self._audit_log.log_aws_operation(
            ref.service,
            ref.operation,
            (log.resource,),
            success=status is OperationStatus.COMPLETED,
            actor=actor or self._agent_actor,
            risk_tier=request.risk_tier.value if request else None,
            request_id=request_id,
            error=error,
            parameters={"duration_ms": duration_ms, "rollback_required": rollback_required},
        )
        updated = dataclasses.replace(
            log,
            status=status,
            duration_ms=duration_ms,
            error_message=error,
            rollback_required=rollback_required,
        )
        self._store.put_operation(updated)
        if rollback_required:
            logger.warning(
                "Operation %s (%s) failed after a create; manual rollback required",
                request_id,
                log.action,
            )
        return updated

    def get_operation_history(self, limit: int | None = None) -> list[OperationLog]:
        return self._store.list_operations(limit)

    def get_success_metrics(self) -> dict[str, float | int]:
        finished = [
            op
            for op in self._store.list_operations()
            if op.status in (OperationStatus.COMPLETED, OperationStatus.FAILED)
        ]
        completed = sum(1 for op in finished if op.status is OperationStatus.COMPLETED)
        durations = [op.duration_ms for op in finished if op.duration_ms]
        total = len(finished)
        return {
            "total_operations": total,
            "success_rate": (completed / total) * 100 if total else 0.0,
            "error_rate": ((total - completed) / total) * 100 if total else 0.0,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "rollbacks_required": sum(1 for op in finished if op.rollback_required),
        }
