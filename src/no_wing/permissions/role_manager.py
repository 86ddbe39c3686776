"""Role selection and assumption for agent operations.

``find_best_role`` picks deterministically among the roles that cover an
operation:

1. narrowest resource scope that still covers the target;
2. a role with an active session, shortest remaining lifetime first;
3. longest ``max_session_duration_seconds``;
4. role ARN.

``assume_role_for_operation`` never raises for assumption problems: it
returns ``None`` so the caller falls back to requesting elevation. Every
call appends exactly one ``role-assumption`` audit event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable

from no_wing.audit.log import AuditLog
from no_wing.audit.models import Actor
from no_wing.aws_credentials.cache import AssumedSession, SessionCache
from no_wing.aws_credentials.sts_provider import (
    AssumptionFailure,
    CallerIdentityError,
    DiscoveryError,
    IdentityProvider,
    sanitize_session_name,
)
from no_wing.domain.operations import OperationContext
from no_wing.domain.roles import Role, RoleListing, scope_breadth
from no_wing.permissions.catalog import RoleCatalog
from no_wing.permissions.models import RoleTestResult
from no_wing.utils.time import utc_now

logger = logging.getLogger(__name__)


class RoleManager:
    def __init__(
        self,
        catalog: RoleCatalog,
        provider: IdentityProvider,
        cache: SessionCache,
        audit_log: AuditLog,
        session_duration_seconds: int = 3600,
        timeout_seconds: float = 15.0,
        actor: Actor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._catalog = catalog
        self._provider = provider
        self._cache = cache
        self._audit_log = audit_log
        self._session_duration_seconds = session_duration_seconds
        self._timeout_seconds = timeout_seconds
        self._actor = actor or Actor.agent()
        self._clock = clock

    @property
    def catalog(self) -> RoleCatalog:
        return self._catalog

    async def list_available_roles(self, refresh: bool = False) -> RoleListing:
        return await self._catalog.list_roles(refresh=refresh)

    async def get_role(self, role_arn: str) -> Role | None:
        return await self._catalog.get_role(role_arn)

    async def find_best_role(self, context: OperationContext) -> Role | None:
        """Best role for ``context`` or ``None``; raises DiscoveryError."""
        listing = await self._catalog.list_roles()
        listing.raise_for_error()
        candidates = self._catalog.candidates(listing.roles, context)
        if not candidates:
            return None

        now = self._clock()

        def rank(candidate: tuple[Role, str]) -> tuple:
            role, scope = candidate
            session = self._cache.get_active(role.role_arn, now)
            reuse = (0, session.remaining_seconds(now)) if session else (1, 0.0)
            return (scope_breadth(scope), reuse, -role.max_session_duration_seconds, role.role_arn)

        best, scope = min(candidates, key=rank)
        logger.debug(
            "Best role for %s on %s: %s (scope %s)",
            context.action_key,
            context.resource,
            best.role_arn,
            scope,
        )
        return best

    def _session_name(self, context: OperationContext | None) -> str:
        service = context.ref.service if context and context.ref.service else "session"
        return sanitize_session_name(f"no-wing-{service}-{int(time.time())}")

    def _duration_for(self, role: Role) -> int:
        return max(900, min(self._session_duration_seconds, role.max_session_duration_seconds))

    async def _assume(self, role: Role, session_name: str) -> AssumedSession:
        credentials = await asyncio.wait_for(
            self._provider.assume_role(role.role_arn, session_name, self._duration_for(role)),
            timeout=self._timeout_seconds,
        )
        return AssumedSession(
            role=role,
            session_name=session_name,
            credentials=credentials,
            assumed_at=self._clock(),
        )

    async def assume_role_for_operation(
        self,
        context: OperationContext | None = None,
        role: Role | None = None,
        request_id: str | None = None,
    ) -> AssumedSession | None:
        if role is None:
            if context is None:
                raise ValueError("either context or role is required")
            try:
                role = await self.find_best_role(context)
            except DiscoveryError as exc:
                self._audit_log.log_role_assumption(
                    "",
                    "",
                    success=False,
                    actor=self._actor,
                    error=f"Role discovery failed: {exc}",
                    request_id=request_id,
                )
                return None
            if role is None:
                self._audit_log.log_role_assumption(
                    "",
                    "",
                    success=False,
                    actor=self._actor,
                    error=f"No assumable role covers {context.action_key} on {context.resource}",
                    request_id=request_id,
                )
                return None

        session_name = self._session_name(context)
        try:
            session, reused = await self._cache.get_or_assume(
                role.role_arn, lambda: self._assume(role, session_name)
            )
        except asyncio.TimeoutError:
            logger.warning("Assuming %s timed out after %.1fs", role.role_arn, self._timeout_seconds)
            self._audit_log.log_role_assumption(
                role.role_arn,
                session_name,
                success=False,
                actor=self._actor,
                error=f"AssumeRole timed out after {self._timeout_seconds:g}s",
                request_id=request_id,
            )
            return None
        except AssumptionFailure as exc:
            logger.warning("Assuming %s failed (%s): %s", role.role_arn, exc.code, exc)
            self._audit_log.log_role_assumption(
                role.role_arn,
                session_name,
                success=False,
                actor=self._actor,
                error=str(exc),
                request_id=request_id,
            )
            return None

        self._audit_log.log_role_assumption(
            role.role_arn,
            session.session_name,
            success=True,
            actor=self._actor,
            reused=reused,
            request_id=request_id,
            expiration=session.expiration,
        )
        return session

    def get_active_sessions(self, now: datetime | None = None) -> list[AssumedSession]:
        return self._cache.active(now or self._clock())

    async def release_session(self, role_arn: str) -> bool:
        released = await self._cache.delete(role_arn)
        if released:
            logger.info("Released session for %s", role_arn)
        return released

    async def clear_cache(self) -> int:
        self._catalog.invalidate()
        return await self._cache.clear()

    async def test_role_assumption(self, role_arn: str) -> RoleTestResult:
        """Assume ``role_arn`` outside the cache and confirm the resulting identity."""
        role = await self._catalog.get_role(role_arn)
        if role is None:
            role = Role(role_arn=role_arn, role_name=role_arn.rsplit("/", 1)[-1])
        session_name = sanitize_session_name(f"no-wing-test-{int(time.time())}")

        try:
            session = await self._assume(role, session_name)
            identity = await asyncio.wait_for(
                self._provider.get_caller_identity(session.credentials),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            error, code = f"timed out after {self._timeout_seconds:g}s", "timeout"
        except (AssumptionFailure, CallerIdentityError) as exc:
            error, code = str(exc), exc.code
        else:
            self._audit_log.log_role_assumption(
                role_arn,
                session_name,
                success=True,
                actor=self._actor,
                expiration=session.expiration,
            )
            return RoleTestResult(
                role_arn=role_arn,
                success=True,
                identity=identity,
                session_name=session_name,
                expiration=session.expiration,
            )

        self._audit_log.log_role_assumption(
            role_arn, session_name, success=False, actor=self._actor, error=error
        )
        return RoleTestResult(
            role_arn=role_arn,
            success=False,
            session_name=session_name,
            error=error,
            error_code=code,
        )
