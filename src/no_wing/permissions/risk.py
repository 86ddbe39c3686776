"""Risk classification for AWS actions.

Classification is a table lookup, never a substring search:

* ``high``: the normalised ``service:Operation`` key matches an entry of the
  high table, or one of the resource's tokens is a production marker.
* ``medium``: the operation's leading CamelCase verb is a mutation verb.
* ``low``: everything else.

Resource tokens are the alphanumeric runs of the resource pattern, so
``prod-data`` and ``prod`` carry the marker while ``products`` does not.
"""

from __future__ import annotations

import re
from fnmatch import fnmatchcase

from no_wing.domain.operations import OperationRef
from no_wing.permissions.models import RiskTier
from no_wing.policy.models import RiskTables

_TOKEN_RE = re.compile(r"[A-Za-z0-9]+")

READ_VERBS = frozenset(
    {"Get", "List", "Describe", "Head", "Lookup", "Search", "Filter", "Scan", "Query"}
)


def resource_tokens(resource: str) -> set[str]:
    return {token.lower() for token in _TOKEN_RE.findall(resource or "")}


class RiskClassifier:
    def __init__(self, tables: RiskTables | None = None) -> None:
        tables = tables or RiskTables()
        self._high_patterns = [_normalise_key(pattern) for pattern in tables.high_actions]
        self._mutation_verbs = frozenset(tables.mutation_verbs)
        self._production_markers = frozenset(marker.lower() for marker in tables.production_markers)

    @property
    def mutation_verbs(self) -> frozenset[str]:
        return self._mutation_verbs

    def is_high_action(self, action: str) -> bool:
        key = _normalise_key(action)
        return any(fnmatchcase(key, pattern) for pattern in self._high_patterns)

    def is_production(self, resource: str) -> bool:
        return bool(resource_tokens(resource) & self._production_markers)

    def is_mutation(self, action: str) -> bool:
        return OperationRef.parse(action).verb in self._mutation_verbs

    def verb_class(self, action: str) -> str:
        """Coarse class of the verb: ``read``, ``write`` or ``other``."""
        verb = OperationRef.parse(action).verb
        if verb in READ_VERBS:
            return "read"
        if verb in self._mutation_verbs:
            return "write"
        return "other"

    def classify(self, action: str, resource: str = "*") -> RiskTier:
        if self.is_high_action(action) or self.is_production(resource):
            return RiskTier.HIGH
        if self.is_mutation(action):
            return RiskTier.MEDIUM
        return RiskTier.LOW


def _normalise_key(action: str) -> str:
    ref = OperationRef.parse(action)
    return f"{ref.service}:{ref.operation.lower()}"
