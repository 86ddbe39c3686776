"""Domain objects for AWS operations requested by the agent."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_CAMEL_WORD = re.compile(r"[A-Z]+(?=[A-Z][a-z]|$)|[A-Z]?[a-z]+|[0-9]+")


@dataclass(frozen=True)
class OperationRef:
    service: str
    operation: str

    @property
    def key(self) -> str:
        return f"{self.service}:{self.operation}"

    @property
    def verb(self) -> str:
        """Leading CamelCase word of the operation (``PutObject`` -> ``Put``)."""
        words = _CAMEL_WORD.findall(self.operation)
        return words[0] if words else self.operation

    @classmethod
    def parse(cls, action: str, service: str | None = None) -> "OperationRef":
        """Parse ``service:Operation`` or a bare operation name."""
        if ":" in action:
            svc, _, op = action.partition(":")
            return cls(service=svc.strip().lower(), operation=op.strip())
        return cls(service=(service or "").strip().lower(), operation=action.strip())


@dataclass(frozen=True)
class OperationContext:
    """An operation the agent intends to perform.

    ``action`` may be given as ``s3:PutObject`` or as ``PutObject`` together
    with ``service``.
    """

    service: str
    action: str
    resources: tuple[str, ...] = ()
    justification: str = ""
    tags: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def ref(self) -> OperationRef:
        return OperationRef.parse(self.action, self.service)

    @property
    def action_key(self) -> str:
        return self.ref.key

    @property
    def resource(self) -> str:
        return self.resources[0] if self.resources else "*"
