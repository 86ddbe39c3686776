"""Governance policy: capability levels, risk tables and role patterns."""

from no_wing.policy.capabilities import CapabilityTable
from no_wing.policy.loader import PolicyLoadError, load_policy, load_policy_or_default
from no_wing.policy.models import GovernancePolicy

__all__ = [
    "CapabilityTable",
    "GovernancePolicy",
    "PolicyLoadError",
    "load_policy",
    "load_policy_or_default",
]
