"""Permission elevation for agent operations.

For each operation the elevator classifies risk, then tries, in order:

* ``direct``: risk is not high and the agent's capability level grants the
  action;
* ``role-switch``: risk is not high and an assumable role covers the action
  and resource;
* ``approval-required``: a pending :class:`PermissionRequest` is opened and
  handed to the approval workflow.

A successful ``direct`` or ``role-switch`` result carries an ``operation_id``
whose operation log is closed with
:meth:`ApprovalWorkflow.record_operation`.

Learned patterns only change which of the first two paths is tried first.
They are never consulted for the risk or capability decisions.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Callable

from no_wing.aws_credentials.sts_provider import DiscoveryError
from no_wing.domain.operations import OperationContext
from no_wing.permissions.approval import ApprovalWorkflow
from no_wing.permissions.models import (
    ElevationMethod,
    ElevationResult,
    PermissionRequest,
    RequestStatus,
    RiskTier,
)
from no_wing.permissions.risk import RiskClassifier
from no_wing.permissions.role_manager import RoleManager
from no_wing.policy.capabilities import CapabilityTable
from no_wing.utils.time import utc_now

logger = logging.getLogger(__name__)

OperationShape = tuple[str, str, str]

_TIER_ORDER = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}
_AUTOMATIC_METHODS = (ElevationMethod.DIRECT, ElevationMethod.ROLE_SWITCH)
_DEFAULT_FALLBACKS = {"*": ["manual-execution"]}


def resource_shape(resource: str) -> str:
    """Coarse shape of a resource pattern used as a learning key.

    ARNs keep their service and resource type; anything else collapses to
    ``*``, ``pattern`` or ``literal``.
    """
    if not resource or resource == "*":
        return "*"
    wildcard = "*" if "*" in resource else ""
    if resource.startswith("arn:"):
        parts = resource.split(":", 5)
        if len(parts) == 6:
            resource_type = re.split(r"[/:]", parts[5], maxsplit=1)[0]
            return f"arn:{parts[2]}:{resource_type}{wildcard}"
    return "pattern" if wildcard else "literal"


class LearnedPatternCache:
    """Bounded LRU of methods that worked, keyed by operation shape."""

    def __init__(self, max_entries: int = 256) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[OperationShape, list[str]] = OrderedDict()

    def record(self, shape: OperationShape, method: str) -> None:
        methods = [m for m in self._entries.get(shape, []) if m != method]
        methods.insert(0, method)
        self._entries[shape] = methods
        self._entries.move_to_end(shape)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def get(self, shape: OperationShape) -> list[str]:
        return list(self._entries.get(shape, []))

    def __len__(self) -> int:
        return len(self._entries)


class PermissionElevator:
    def __init__(
        self,
        role_manager: RoleManager,
        classifier: RiskClassifier,
        capabilities: CapabilityTable,
        workflow: ApprovalWorkflow,
        capability_level: int = 1,
        learned_cache_size: int = 256,
        fallback_strategies: dict[str, list[str]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._role_manager = role_manager
        self._classifier = classifier
        self._capabilities = capabilities
        self._workflow = workflow
        self._capability_level = capability_level
        self._learned = LearnedPatternCache(learned_cache_size)
        self._fallback_strategies = (
            fallback_strategies if fallback_strategies is not None else _DEFAULT_FALLBACKS
        )
        self._clock = clock

    @property
    def capability_level(self) -> int:
        return self._capability_level

    def classify(self, context: OperationContext) -> RiskTier:
        tiers = [
            self._classifier.classify(context.action_key, resource)
            for resource in (context.resources or ("*",))
        ]
        return max(tiers, key=_TIER_ORDER.__getitem__)

    def operation_shape(self, context: OperationContext) -> OperationShape:
        return (
            context.ref.service,
            self._classifier.verb_class(context.action_key),
            resource_shape(context.resource),
        )

    def _attempt_order(self, context: OperationContext) -> list[ElevationMethod]:
        learned = [
            ElevationMethod(m)
            for m in self._learned.get(self.operation_shape(context))
            if m in {method.value for method in _AUTOMATIC_METHODS}
        ]
        return learned + [m for m in _AUTOMATIC_METHODS if m not in learned]

    async def elevate_permissions(self, context: OperationContext) -> ElevationResult:
        risk = self.classify(context)
        notes: list[str] = []

        if risk is RiskTier.HIGH:
            notes.append(f"{context.action_key} on {context.resource} is high risk")
        else:
            for method in self._attempt_order(context):
                if method is ElevationMethod.DIRECT:
                    if self._capabilities.allows(context.action_key, self._capability_level):
                        return ElevationResult(
                            success=True,
                            method=ElevationMethod.DIRECT,
                            message=(
                                f"Capability level {self._capability_level} "
                                f"({self._capabilities.name_for(self._capability_level)}) "
                                f"grants {context.action_key}"
                            ),
                            risk_tier=risk,
                            operation_id=self._open_operation(context),
                        )
                    notes.append(
                        f"capability level {self._capability_level} does not grant "
                        f"{context.action_key}"
                    )
                    continue

                result = await self._try_role_switch(context, risk, notes)
                if result is not None:
                    return result

        return self._request_approval(context, risk, notes)

    async def _try_role_switch(
        self, context: OperationContext, risk: RiskTier, notes: list[str]
    ) -> ElevationResult | None:
        try:
            role = await self._role_manager.find_best_role(context)
        except DiscoveryError as exc:
            logger.warning("Role discovery failed while elevating %s: %s", context.action_key, exc)
            notes.append(f"role discovery failed: {exc}")
            return None
        if role is None:
            notes.append("no assumable role covers the operation")
            return None

        session = await self._role_manager.assume_role_for_operation(context, role)
        if session is None:
            notes.append(f"assuming {role.role_name} failed")
            return None
        return ElevationResult(
            success=True,
            method=ElevationMethod.ROLE_SWITCH,
            message=f"Assumed role {role.role_arn} (session {session.session_name})",
            risk_tier=risk,
            role=role,
            session=session,
            operation_id=self._open_operation(context),
        )

    def _request_approval(
        self, context: OperationContext, risk: RiskTier, notes: list[str]
    ) -> ElevationResult:
        request = PermissionRequest(
            request_id=f"req-{uuid.uuid4().hex[:12]}",
            requested_action=context.action_key,
            target_resource_pattern=context.resource,
            justification=context.justification or "; ".join(notes),
            risk_tier=risk,
            created_at=self._clock(),
            requires_approval=True,
            service=context.ref.service,
        )
        self._workflow.submit(request)
        reason = "; ".join(notes) if notes else "approval required"
        return ElevationResult(
            success=False,
            method=ElevationMethod.APPROVAL_REQUIRED,
            message=f"Human approval required ({reason})",
            risk_tier=risk,
            alternatives=[
                f"no-wing permissions approve {request.request_id} --approver <name>",
                f"no-wing permissions deny {request.request_id} --approver <name>",
                *self.fallback_strategies(context),
            ],
            request_id=request.request_id,
            operation_id=request.request_id,
        )

    def fallback_strategies(self, context: OperationContext) -> list[str]:
        """Strategies for ``service:Action``, else its service, else ``*``."""
        for key in (context.action_key, context.ref.service, "*"):
            if key in self._fallback_strategies:
                return list(self._fallback_strategies[key])
        return []

    def _open_operation(self, context: OperationContext) -> str:
        operation_id = f"op-{uuid.uuid4().hex[:12]}"
        self._workflow.open_operation(
            operation_id, context.action_key, context.resource, started_at=self._clock()
        )
        return operation_id

    def get_permission_request(self, request_id: str) -> PermissionRequest | None:
        return self._workflow.get(request_id)

    def learn_from_success(self, context: OperationContext, method: ElevationMethod | str) -> None:
        value = method.value if isinstance(method, ElevationMethod) else str(method)
        shape = self.operation_shape(context)
        self._learned.record(shape, value)
        logger.debug("Learned method %s for shape %s", value, shape)

    def get_learned_patterns(self, context: OperationContext) -> list[str]:
        return self._learned.get(self.operation_shape(context))

    def get_request_statistics(self) -> dict[str, int]:
        stats = {"total": 0, **{status.value: 0 for status in RequestStatus}}
        for request in self._workflow.list_requests():
            stats["total"] += 1
            stats[request.status.value] += 1
        return stats
