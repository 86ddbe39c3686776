"""Discovery of the roles the caller may assume."""

from __future__ import annotations

import asyncio
import logging
import time
from fnmatch import fnmatchcase
from typing import Iterable

from no_wing.aws_credentials.sts_provider import DiscoveryError, IdentityProvider
from no_wing.domain.operations import OperationContext
from no_wing.domain.roles import Role, RoleListing
from no_wing.errors import NoWingError

logger = logging.getLogger(__name__)


class RoleCatalog:
    """Caches the discovered role listing for ``cache_ttl_seconds``.

    Only complete listings are cached; a listing with an error or with
    warnings is re-fetched on the next call.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        role_patterns: dict[str, list[str]] | None = None,
        timeout_seconds: float = 15.0,
        cache_ttl_seconds: float = 300.0,
        principal: str | None = None,
    ) -> None:
        self._provider = provider
        self._role_patterns = dict(role_patterns or {})
        self._timeout_seconds = timeout_seconds
        self._cache_ttl_seconds = cache_ttl_seconds
        self._principal = principal
        self._cached: RoleListing | None = None
        self._cached_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._cached = None

    async def _resolve_principal(self) -> str:
        if self._principal is None:
            identity = await asyncio.wait_for(
                self._provider.get_caller_identity(), timeout=self._timeout_seconds
            )
            self._principal = identity.arn
        return self._principal

    async def list_roles(self, refresh: bool = False) -> RoleListing:
        """Return the current listing; never raises for provider failures."""
        async with self._lock:
            if (
                not refresh
                and self._cached is not None
                and time.monotonic() - self._cached_at < self._cache_ttl_seconds
            ):
                return self._cached

            listing = await self._discover()
            if listing.ok and not listing.warnings:
                self._cached = listing
                self._cached_at = time.monotonic()
            return listing

    async def _discover(self) -> RoleListing:
        try:
            principal = await self._resolve_principal()
            roles = await asyncio.wait_for(
                self._provider.list_assumable_roles(principal), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Role discovery timed out after %.1fs", self._timeout_seconds)
            return RoleListing(
                error=DiscoveryError(
                    f"Identity provider did not answer within {self._timeout_seconds:g}s",
                    code="timeout",
                )
            )
        except DiscoveryError as exc:
            if exc.partial_roles:
                return RoleListing(
                    roles=sorted(exc.partial_roles, key=lambda r: r.role_arn),
                    warnings=[f"Role listing is incomplete: {exc}"],
                )
            return RoleListing(error=exc)
        except NoWingError as exc:
            return RoleListing(error=DiscoveryError(str(exc), code=exc.code))

        return RoleListing(roles=sorted(roles, key=lambda r: r.role_arn))

    async def get_role(self, role_arn: str) -> Role | None:
        listing = await self.list_roles()
        return next((role for role in listing.roles if role.role_arn == role_arn), None)

    def patterns_for(self, service: str) -> list[str]:
        return list(self._role_patterns.get(service, [])) + list(self._role_patterns.get("*", []))

    def covers(self, role: Role, context: OperationContext) -> bool:
        """Whether ``role`` is meant to perform ``context``'s action.

        Roles carrying the ``no-wing:actions`` tag are matched on it; untagged
        roles are matched by name against the service's role patterns.
        """
        if role.allowed_actions:
            return role.covers_action(context.action_key)
        name = role.role_name.lower()
        return any(
            fnmatchcase(name, pattern.lower()) for pattern in self.patterns_for(context.ref.service)
        )

    def candidates(
        self, roles: Iterable[Role], context: OperationContext
    ) -> list[tuple[Role, str]]:
        """Roles covering the action and the resource, with the scope that matched."""
        matched: list[tuple[Role, str]] = []
        for role in roles:
            if not self.covers(role, context):
                continue
            scope = role.scope_for(context.resource)
            if scope is not None:
                matched.append((role, scope))
        return matched
