"""Policy loader for policy.yaml."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from no_wing.errors import NoWingError
from no_wing.policy.models import GovernancePolicy

logger = logging.getLogger(__name__)


class PolicyLoadError(NoWingError):
    """Raised when the governance policy file cannot be parsed."""

    default_hint = "check the YAML in your policy file or remove it to use the defaults"


def load_policy(path: str) -> GovernancePolicy:
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_path}")
    try:
        with policy_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise PolicyLoadError(f"Invalid YAML in {policy_path}: {exc}", code="policy_yaml") from exc
    if not isinstance(data, dict):
        raise PolicyLoadError(f"Policy file {policy_path} must contain a mapping", code="policy_shape")
    try:
        return GovernancePolicy.from_yaml(data)
    except ValidationError as exc:
        raise PolicyLoadError(f"Invalid policy in {policy_path}: {exc}", code="policy_invalid") from exc


def load_policy_or_default(path: str | None) -> GovernancePolicy:
    """Load ``path`` when it exists, otherwise fall back to the built-in policy."""
    if path and Path(path).exists():
        return load_policy(path)
    logger.debug("No policy file at %s, using built-in governance policy", path)
    return GovernancePolicy()
