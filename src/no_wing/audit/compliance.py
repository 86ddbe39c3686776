"""Compliance reports derived from audit events.

A report is a pure function of the events returned by ``AuditLog.query`` for
its window; nothing else is consulted, so regenerating a report over an
unchanged window yields the same ``report_id``, summary and violations.
"""

from __future__ import annotations

import logging
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Callable, Iterable

from no_wing.audit.models import (
    ActorType,
    AuditEvent,
    ComplianceReport,
    ComplianceSummary,
    ComplianceViolation,
    EventType,
    PermissionAction,
)
from no_wing.domain.operations import OperationRef
from no_wing.permissions.models import RiskTier
from no_wing.permissions.risk import RiskClassifier, resource_tokens
from no_wing.utils.hashing import sha256_text
from no_wing.utils.time import ensure_utc, utc_now

logger = logging.getLogger(__name__)

PERMISSION_ESCALATION = "permission-escalation"
UNAUTHORIZED_ACCESS = "unauthorized-access"

_ACCESS_DENIED_MARKERS = ("accessdenied", "access denied", "not authorized", "unauthorizedoperation")


class ComplianceAnalyzer:
    def __init__(
        self,
        classifier: RiskClassifier | None = None,
        admin_markers: Iterable[str] = ("admin", "administrator"),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._classifier = classifier or RiskClassifier()
        self._admin_markers = frozenset(marker.lower() for marker in admin_markers)
        self._clock = clock

    def build_report(
        self,
        events: list[AuditEvent],
        start: datetime,
        end: datetime,
    ) -> ComplianceReport:
        start = ensure_utc(start)
        end = ensure_utc(end)
        summary = summarize(events)
        violations = self.find_violations(events)
        digest_input = "|".join(
            [start.isoformat(), end.isoformat(), *(event.event_id for event in events)]
        )
        report = ComplianceReport(
            report_id="rpt-" + sha256_text(digest_input)[:16],
            generated_at=self._clock(),
            start=start,
            end=end,
            summary=summary,
            violations=violations,
            events=list(events),
        )
        logger.info(
            "Compliance report %s: %d events, %d violations",
            report.report_id,
            summary.total_events,
            len(violations),
        )
        return report

    def find_violations(self, events: list[AuditEvent]) -> list[ComplianceViolation]:
        approved_ids: set[str] = set()
        approved_scopes: list[tuple[str, str]] = []
        violations: list[ComplianceViolation] = []

        for event in sorted(events, key=lambda e: e.sort_key):
            if event.event_type is EventType.PERMISSION_REQUEST:
                if (
                    event.operation.action == PermissionAction.APPROVE.value
                    and event.result.success
                ):
                    if event.context.request_id:
                        approved_ids.add(event.context.request_id)
                    requested = str(event.operation.parameters.get("requested_action", ""))
                    for pattern in event.operation.resources or ("*",):
                        approved_scopes.append((_action_key(requested, ""), pattern))
                continue

            if event.event_type is EventType.AWS_OPERATION:
                violations.extend(self._check_operation(event, approved_ids, approved_scopes))
                continue

            if event.event_type is EventType.ROLE_ASSUMPTION:
                violation = self._check_role_assumption(event)
                if violation is not None:
                    violations.append(violation)

        return violations

    def _risk_of(self, event: AuditEvent) -> RiskTier:
        if event.context.risk_tier:
            try:
                return RiskTier(event.context.risk_tier)
            except ValueError:
                logger.warning(
                    "Unknown risk tier %r on event %s", event.context.risk_tier, event.event_id
                )
        action = _action_key(event.operation.action, event.operation.service)
        resources = event.operation.resources or ("*",)
        tiers = [self._classifier.classify(action, resource) for resource in resources]
        return max(tiers, key=_tier_rank)

    def _check_operation(
        self,
        event: AuditEvent,
        approved_ids: set[str],
        approved_scopes: list[tuple[str, str]],
    ) -> list[ComplianceViolation]:
        found: list[ComplianceViolation] = []
        action = _action_key(event.operation.action, event.operation.service)

        if self._risk_of(event) is RiskTier.HIGH and not _is_approved(
            event, action, approved_ids, approved_scopes
        ):
            found.append(
                ComplianceViolation(
                    violation_id=f"{PERMISSION_ESCALATION}-{event.event_id[:12]}",
                    type=PERMISSION_ESCALATION,
                    severity="high",
                    description=(
                        f"High-risk operation {action} on "
                        f"{', '.join(event.operation.resources) or '*'} "
                        "has no prior approval in the report window"
                    ),
                    event_id=event.event_id,
                    recommendation="Route high-risk operations through `no-wing permissions approve`",
                )
            )

        error = (event.result.error_message or "").lower()
        if not event.result.success and any(marker in error for marker in _ACCESS_DENIED_MARKERS):
            found.append(
                ComplianceViolation(
                    violation_id=f"{UNAUTHORIZED_ACCESS}-{event.event_id[:12]}",
                    type=UNAUTHORIZED_ACCESS,
                    severity="medium",
                    description=f"Access denied for {action} by {event.actor.identity}",
                    event_id=event.event_id,
                    recommendation="Review the agent's capability level and assumable roles",
                )
            )
        return found

    def _check_role_assumption(self, event: AuditEvent) -> ComplianceViolation | None:
        if not event.result.success or event.operation.parameters.get("reused"):
            return None
        for role_arn in event.operation.resources:
            role_name = role_arn.rsplit("/", 1)[-1]
            if resource_tokens(role_name) & self._admin_markers:
                return ComplianceViolation(
                    violation_id=f"{PERMISSION_ESCALATION}-{event.event_id[:12]}",
                    type=PERMISSION_ESCALATION,
                    severity="high",
                    description=f"Administrative role {role_name} was assumed",
                    event_id=event.event_id,
                    recommendation="Use a narrowly scoped no-wing role instead of an admin role",
                )
        return None


def summarize(events: list[AuditEvent]) -> ComplianceSummary:
    return ComplianceSummary(
        total_events=len(events),
        human_actions=sum(1 for e in events if e.actor.type is ActorType.HUMAN),
        agent_actions=sum(1 for e in events if e.actor.type is ActorType.AGENT),
        errors=sum(1 for e in events if not e.result.success),
        permission_requests=sum(
            1 for e in events if e.event_type is EventType.PERMISSION_REQUEST
        ),
    )


def _action_key(action: str, service: str) -> str:
    return OperationRef.parse(action, service).key.lower()


def _tier_rank(tier: RiskTier) -> int:
    return {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}[tier]


def _is_approved(
    event: AuditEvent,
    action: str,
    approved_ids: set[str],
    approved_scopes: list[tuple[str, str]],
) -> bool:
    if event.context.request_id and event.context.request_id in approved_ids:
        return True
    resources = event.operation.resources or ("*",)
    for approved_action, pattern in approved_scopes:
        if approved_action != action:
            continue
        if all(resource == pattern or fnmatchcase(resource, pattern) for resource in resources):
            return True
    return False
