"""IAM/STS identity provider.

Discovers the roles the current caller may assume, assumes them with
``sts:AssumeRole`` and reports the caller identity. All botocore calls run in
worker threads so the governance components can stay async.

The RoleSessionName is mandatory for audit traceability: CloudTrail records
it on every call made with the temporary credentials.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from no_wing.domain.roles import (
    CallerIdentity,
    Role,
    parse_policy_document,
    trusted_principals,
    trusts,
)
from no_wing.errors import NoWingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporaryCredentials:
    """Immutable temporary AWS credentials from STS."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime
    assumed_role_arn: str
    assumed_role_id: str

    def __repr__(self) -> str:
        return (
            f"TemporaryCredentials(access_key_id={self.access_key_id[:8]}***, "
            f"expiration={self.expiration.isoformat()})"
        )


class DiscoveryError(NoWingError):
    """Raised when roles cannot be enumerated.

    ``partial_roles`` holds whatever was read before the failure.
    """

    default_hint = "check network access and that your credentials allow iam:ListRoles"

    def __init__(
        self,
        message: str,
        code: str = "discovery_failed",
        partial_roles: list[Role] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.partial_roles = list(partial_roles or [])


class AssumptionFailure(NoWingError):
    """Raised when STS rejects an AssumeRole call."""

    default_hint = "verify the role trust policy names your identity, or request elevation"


class CallerIdentityError(NoWingError):
    """Raised when sts:GetCallerIdentity fails for the active credentials."""

    default_hint = "check the AWS profiles named by NO_WING_USER_PROFILE and NO_WING_AGENT_PROFILE"


class IdentityProvider(Protocol):
    async def list_assumable_roles(self, principal: str) -> list[Role]: ...

    async def assume_role(
        self, role_arn: str, session_name: str, duration_seconds: int
    ) -> TemporaryCredentials: ...

    async def get_caller_identity(
        self, credentials: TemporaryCredentials | None = None
    ) -> CallerIdentity: ...


_ASSUME_CODE_MAP = {
    "MalformedPolicyDocument": "policy_error",
    "PackedPolicyTooLarge": "policy_too_large",
    "ExpiredTokenException": "token_expired",
    "RegionDisabledException": "region_disabled",
    "AccessDenied": "access_denied",
    "ValidationError": "invalid_request",
}


class AWSIdentityProvider:
    """Thread-safe boto3-backed identity provider."""

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        connect_timeout: int = 5,
        read_timeout: int = 15,
    ) -> None:
        self._region = region
        self._profile = profile
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 2},
        )
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    def _get_client(self, service: str) -> Any:
        client = self._clients.get(service)
        if client is not None:
            return client

        with self._lock:
            client = self._clients.get(service)
            if client is not None:
                return client
            session = boto3.session.Session(profile_name=self._profile)
            client = session.client(service, region_name=self._region, config=self._config)
            self._clients[service] = client
            logger.info(
                "%s client initialized (region=%s, profile=%s)",
                service.upper(),
                self._region,
                self._profile or "default",
            )
            return client

    async def list_assumable_roles(self, principal: str) -> list[Role]:
        return await asyncio.to_thread(self._list_assumable_roles_sync, principal)

    async def assume_role(
        self, role_arn: str, session_name: str, duration_seconds: int
    ) -> TemporaryCredentials:
        return await asyncio.to_thread(
            self._assume_role_sync, role_arn, session_name, duration_seconds
        )

    async def get_caller_identity(
        self, credentials: TemporaryCredentials | None = None
    ) -> CallerIdentity:
        return await asyncio.to_thread(self._get_caller_identity_sync, credentials)

    def _list_assumable_roles_sync(self, principal: str) -> list[Role]:
        client = self._get_client("iam")
        roles: list[Role] = []
        marker: str | None = None

        try:
            while True:
                params: dict[str, Any] = {"PathPrefix": "/", "MaxItems": 100}
                if marker:
                    params["Marker"] = marker
                resp = client.list_roles(**params)
                for entry in resp.get("Roles", []) or []:
                    role = self._role_from_entry(client, entry, principal)
                    if role is not None:
                        roles.append(role)
                if not resp.get("IsTruncated"):
                    break
                marker = resp.get("Marker")
        except (ClientError, BotoCoreError) as exc:
            code = _error_code(exc)
            logger.warning("Role discovery failed after %d roles: %s", len(roles), exc)
            raise DiscoveryError(
                f"Role discovery failed: {exc}",
                code="access_denied" if code == "AccessDenied" else "discovery_failed",
                partial_roles=roles,
            ) from exc

        logger.info("Found %d assumable roles for %s", len(roles), principal)
        return roles

    def _role_from_entry(self, client: Any, entry: dict[str, Any], principal: str) -> Role | None:
        role_name = entry.get("RoleName")
        role_arn = entry.get("Arn")
        if not role_name or not role_arn:
            return None
        try:
            document = parse_policy_document(entry.get("AssumeRolePolicyDocument"))
        except ValueError as exc:
            logger.warning("Skipping role %s: unreadable trust policy (%s)", role_name, exc)
            return None
        principals = trusted_principals(document)
        if not trusts(principals, principal):
            return None
        return Role(
            role_arn=role_arn,
            role_name=role_name,
            trusted_principals=principals,
            max_session_duration_seconds=int(entry.get("MaxSessionDuration") or 3600),
            tags=self._role_tags(client, role_name, entry),
            description=entry.get("Description"),
        )

    def _role_tags(self, client: Any, role_name: str, entry: dict[str, Any]) -> dict[str, str]:
        tags = entry.get("Tags")
        if tags is None:
            try:
                tags = client.list_role_tags(RoleName=role_name).get("Tags", [])
            except ClientError as exc:
                logger.warning("Could not read tags for role %s: %s", role_name, exc)
                tags = []
        return {t["Key"]: t["Value"] for t in tags if t.get("Key") and t.get("Value") is not None}

    def _assume_role_sync(
        self, role_arn: str, session_name: str, duration_seconds: int
    ) -> TemporaryCredentials:
        client = self._get_client("sts")
        safe_session_name = sanitize_session_name(session_name)

        try:
            response = client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=safe_session_name,
                DurationSeconds=duration_seconds,
            )
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            error_message = exc.response.get("Error", {}).get("Message", str(exc))
            logger.warning(
                "STS failed: role=%s, session=%s, error=%s: %s",
                role_arn,
                safe_session_name,
                error_code,
                error_message,
            )
            raise AssumptionFailure(
                error_message, code=_ASSUME_CODE_MAP.get(error_code, "sts_error")
            ) from exc
        except BotoCoreError as exc:
            raise AssumptionFailure(str(exc), code="sts_unreachable") from exc

        creds = response["Credentials"]
        assumed = response["AssumedRoleUser"]

        logger.info("Assumed role: %s, session=%s", role_arn, safe_session_name)

        return TemporaryCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=creds["Expiration"],
            assumed_role_arn=assumed["Arn"],
            assumed_role_id=assumed["AssumedRoleId"],
        )

    def _get_caller_identity_sync(self, credentials: TemporaryCredentials | None) -> CallerIdentity:
        if credentials is None:
            client = self._get_client("sts")
        else:
            client = boto3.client(
                "sts",
                region_name=self._region,
                aws_access_key_id=credentials.access_key_id,
                aws_secret_access_key=credentials.secret_access_key,
                aws_session_token=credentials.session_token,
                config=self._config,
            )
        try:
            resp = client.get_caller_identity()
        except (ClientError, BotoCoreError) as exc:
            raise CallerIdentityError(
                f"Could not resolve caller identity: {exc}", code="identity_unavailable"
            ) from exc
        return CallerIdentity(
            account_id=str(resp.get("Account", "")),
            arn=str(resp.get("Arn", "")),
            user_id=str(resp.get("UserId", "")),
        )


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code", "Unknown"))
    return type(exc).__name__


def sanitize_session_name(name: str) -> str:
    """Sanitize for STS (2-64 chars, alphanumeric/=,.@-)."""
    safe = re.sub(r"[^a-zA-Z0-9=,.@-]", "-", name)
    safe = re.sub(r"-+", "-", safe).strip("-")
    if len(safe) > 64:
        suffix = hashlib.sha256(name.encode()).hexdigest()[:8]
        safe = safe[:55] + "-" + suffix
    return safe if len(safe) >= 2 else "no-wing-" + safe
