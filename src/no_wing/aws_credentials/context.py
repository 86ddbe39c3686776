"""User/agent credential contexts.

The human developer and the agent run under separate AWS profiles. The
active context is persisted to ``context.json`` so that successive CLI
invocations agree on which identity is in use; every switch is audited.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from no_wing.audit.log import AuditLog
from no_wing.audit.models import Actor
from no_wing.aws_credentials.sts_provider import (
    AWSIdentityProvider,
    CallerIdentityError,
    IdentityProvider,
)
from no_wing.domain.roles import CallerIdentity
from no_wing.errors import NoWingError
from no_wing.utils.time import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

USER_CONTEXT = "user"
AGENT_CONTEXT = "agent"
CONTEXT_TYPES = (USER_CONTEXT, AGENT_CONTEXT)


class CredentialContextError(NoWingError):
    default_hint = "check the AWS profiles named by NO_WING_USER_PROFILE and NO_WING_AGENT_PROFILE"


@dataclass(frozen=True)
class CredentialContext:
    context_type: str
    profile: str | None
    identity: CallerIdentity | None
    switched_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_type": self.context_type,
            "profile": self.profile,
            "identity": (
                {
                    "account_id": self.identity.account_id,
                    "arn": self.identity.arn,
                    "user_id": self.identity.user_id,
                }
                if self.identity
                else None
            ),
            "switched_at": self.switched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialContext":
        identity = data.get("identity")
        return cls(
            context_type=str(data["context_type"]),
            profile=data.get("profile"),
            identity=CallerIdentity(**identity) if identity else None,
            switched_at=parse_timestamp(data["switched_at"]),
        )


ProviderFactory = Callable[[str | None], IdentityProvider]


class CredentialManager:
    def __init__(
        self,
        context_path: str,
        audit_log: AuditLog,
        user_profile: str | None = None,
        agent_profile: str | None = None,
        region: str = "us-east-1",
        provider_factory: ProviderFactory | None = None,
    ) -> None:
        self._context_path = Path(context_path)
        self._audit_log = audit_log
        self._profiles = {USER_CONTEXT: user_profile, AGENT_CONTEXT: agent_profile}
        self._provider_factory = provider_factory or (
            lambda profile: AWSIdentityProvider(region=region, profile=profile)
        )
        self._providers: dict[str | None, IdentityProvider] = {}

    def profile_for(self, context_type: str) -> str | None:
        if context_type not in CONTEXT_TYPES:
            raise CredentialContextError(
                f"Unknown credential context {context_type!r}; "
                f"expected one of {', '.join(CONTEXT_TYPES)}",
                code="invalid_context",
                hint="use `no-wing credentials switch user` or `no-wing credentials switch agent`",
            )
        profile = self._profiles[context_type]
        if context_type == AGENT_CONTEXT and not profile:
            raise CredentialContextError(
                "No agent profile is configured",
                code="agent_profile_missing",
                hint="set NO_WING_AGENT_PROFILE to the agent's AWS profile",
            )
        return profile

    def provider_for(self, context_type: str) -> IdentityProvider:
        profile = self.profile_for(context_type)
        provider = self._providers.get(profile)
        if provider is None:
            provider = self._provider_factory(profile)
            self._providers[profile] = provider
        return provider

    def current(self) -> CredentialContext | None:
        if not self._context_path.exists():
            return None
        try:
            data = json.loads(self._context_path.read_text(encoding="utf-8"))
            return CredentialContext.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CredentialContextError(
                f"Credential context file {self._context_path} is unreadable: {exc}",
                code="context_corrupt",
            ) from exc

    def current_type(self) -> str:
        context = self.current()
        return context.context_type if context else USER_CONTEXT

    def current_provider(self) -> IdentityProvider:
        return self.provider_for(self.current_type())

    async def switch(self, context_type: str) -> CredentialContext:
        """Make ``context_type`` the active context after verifying its identity."""
        previous = self.current()
        previous_type = previous.context_type if previous else None
        profile = self.profile_for(context_type)
        actor = Actor.human(previous.identity.arn) if previous and previous.identity else None

        try:
            identity = await self.provider_for(context_type).get_caller_identity()
        except CallerIdentityError as exc:
            self._audit_log.log_credential_switch(
                previous_type,
                context_type,
                identity="",
                success=False,
                actor=actor,
                error=str(exc),
            )
            raise CredentialContextError(
                f"Failed to switch to {context_type} context: {exc}", code="switch_failed"
            ) from exc

        context = CredentialContext(
            context_type=context_type,
            profile=profile,
            identity=identity,
            switched_at=utc_now(),
        )
        self._audit_log.log_credential_switch(
            previous_type,
            context_type,
            identity=identity.arn,
            success=True,
            actor=actor,
        )
        self._write(context)
        logger.info("Switched to %s context: %s", context_type, identity.arn)
        return context

    async def whoami(self) -> CredentialContext:
        context_type = self.current_type()
        identity = await self.provider_for(context_type).get_caller_identity()
        current = self.current()
        return CredentialContext(
            context_type=context_type,
            profile=self.profile_for(context_type),
            identity=identity,
            switched_at=current.switched_at if current else utc_now(),
        )

    async def test(self) -> dict[str, CallerIdentity | NoWingError]:
        """Resolve the identity of every configured context without switching."""
        results: dict[str, CallerIdentity | NoWingError] = {}
        for context_type in CONTEXT_TYPES:
            try:
                results[context_type] = await self.provider_for(context_type).get_caller_identity()
            except (CredentialContextError, CallerIdentityError) as exc:
                results[context_type] = exc
        return results

    def _write(self, context: CredentialContext) -> None:
        self._context_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._context_path.parent, prefix=".context-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(context.to_dict(), handle, indent=2)
            os.replace(tmp_path, self._context_path)
        except OSError as exc:
            Path(tmp_path).unlink(missing_ok=True)
            raise CredentialContextError(
                f"Cannot persist credential context: {exc}", code="context_write"
            ) from exc
