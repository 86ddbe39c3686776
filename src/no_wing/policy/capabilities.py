"""Cumulative capability table.

Level ``n`` grants every action listed at levels ``1..n``. Entries may use
``*`` globs (``apigateway:*``).
"""

from __future__ import annotations

from fnmatch import fnmatchcase

from no_wing.policy.models import CapabilityLevel


class CapabilityTable:
    def __init__(self, levels: dict[int, CapabilityLevel]) -> None:
        self._levels = dict(sorted(levels.items()))

    @property
    def levels(self) -> list[int]:
        return list(self._levels)

    def name_for(self, level: int) -> str:
        entry = self._levels.get(level)
        return entry.name if entry and entry.name else f"level-{level}"

    def permissions_for(self, level: int) -> list[str]:
        """Ordered, de-duplicated actions granted at ``level``."""
        seen: set[str] = set()
        permissions: list[str] = []
        for current, entry in self._levels.items():
            if current > level:
                break
            for action in entry.actions:
                if action not in seen:
                    seen.add(action)
                    permissions.append(action)
        return permissions

    def allows(self, action: str, level: int) -> bool:
        key = _normalise(action)
        return any(fnmatchcase(key, _normalise(granted)) for granted in self.permissions_for(level))


def _normalise(action: str) -> str:
    service, sep, operation = action.partition(":")
    if not sep:
        return action.lower()
    return f"{service.lower()}:{operation.lower()}"
