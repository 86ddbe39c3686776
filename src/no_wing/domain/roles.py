"""Assumable roles as discovered from IAM."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any
from urllib.parse import unquote

ACTIONS_TAG = "no-wing:actions"
RESOURCE_SCOPE_TAG = "no-wing:resource-scope"

_ASSUMED_ROLE_ARN = re.compile(
    r"^arn:(?P<partition>[^:]+):sts::(?P<account>\d{12}):assumed-role/(?P<role>[^/]+)/.+$"
)
_ACCOUNT_ARN = re.compile(r"^arn:[^:]+:(?:iam|sts)::(?P<account>\d{12}):")
_ASSUME_ACTIONS = frozenset({"sts:assumerole", "sts:*", "*"})


@dataclass(frozen=True)
class Role:
    """An IAM role the caller may assume. Never mutated after discovery."""

    role_arn: str
    role_name: str
    trusted_principals: tuple[str, ...] = ()
    max_session_duration_seconds: int = 3600
    tags: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    description: str | None = None

    @property
    def resource_scopes(self) -> tuple[str, ...]:
        raw = self.tags.get(RESOURCE_SCOPE_TAG, "")
        scopes = tuple(part.strip() for part in raw.split(",") if part.strip())
        return scopes or ("*",)

    @property
    def allowed_actions(self) -> tuple[str, ...]:
        raw = self.tags.get(ACTIONS_TAG, "")
        return tuple(part.strip() for part in raw.split(",") if part.strip())

    def covers_action(self, action_key: str) -> bool:
        key = action_key.lower()
        return any(fnmatchcase(key, pattern.lower()) for pattern in self.allowed_actions)

    def scope_for(self, resource: str) -> str | None:
        """Narrowest of this role's scopes that covers ``resource``."""
        matching = [scope for scope in self.resource_scopes if fnmatchcase(resource, scope)]
        if not matching:
            return None
        return min(matching, key=scope_breadth)


def scope_breadth(pattern: str) -> tuple[int, int]:
    """Ordering key for resource patterns; smaller means narrower.

    Fewer wildcards is narrower; with equal wildcards, more literal
    characters is narrower.
    """
    wildcards = pattern.count("*") + pattern.count("?")
    literal = len(pattern) - wildcards
    return (wildcards, -literal)


def parse_policy_document(document: Any) -> dict[str, Any]:
    """IAM returns trust policies either decoded or URL-encoded JSON."""
    if isinstance(document, dict):
        return document
    if not document:
        return {}
    text = unquote(str(document))
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError("Trust policy document is not a JSON object")
    return parsed


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def trusted_principals(document: dict[str, Any]) -> tuple[str, ...]:
    """AWS principals allowed to call sts:AssumeRole by the trust policy."""
    principals: list[str] = []
    for statement in _as_list(document.get("Statement")):
        if not isinstance(statement, dict) or statement.get("Effect") != "Allow":
            continue
        actions = {str(a).lower() for a in _as_list(statement.get("Action"))}
        if not actions & _ASSUME_ACTIONS:
            continue
        principal = statement.get("Principal")
        if principal == "*":
            principals.append("*")
            continue
        if isinstance(principal, dict):
            principals.extend(str(p) for p in _as_list(principal.get("AWS")))
    return tuple(dict.fromkeys(principals))


def principal_aliases(caller_arn: str) -> set[str]:
    """Identifiers a trust policy may use to name ``caller_arn``."""
    aliases = {caller_arn}
    assumed = _ASSUMED_ROLE_ARN.match(caller_arn)
    if assumed:
        aliases.add(
            f"arn:{assumed['partition']}:iam::{assumed['account']}:role/{assumed['role']}"
        )
    account = _ACCOUNT_ARN.match(caller_arn)
    if account:
        account_id = account["account"]
        partition = caller_arn.split(":")[1]
        aliases.add(account_id)
        aliases.add(f"arn:{partition}:iam::{account_id}:root")
    return aliases


def trusts(principals: tuple[str, ...], caller_arn: str) -> bool:
    if "*" in principals:
        return True
    aliases = principal_aliases(caller_arn)
    return any(principal in aliases for principal in principals)


@dataclass(frozen=True)
class CallerIdentity:
    account_id: str
    arn: str
    user_id: str = ""


@dataclass
class RoleListing:
    """Result of role discovery.

    ``error`` is set when the identity provider could not be reached; in that
    case ``roles`` holds only what was read before the failure.
    """

    roles: list[Role] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def __iter__(self):
        return iter(self.roles)

    def __len__(self) -> int:
        return len(self.roles)
