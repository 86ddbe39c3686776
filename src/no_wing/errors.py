"""Base error type shared by the governance components."""

from __future__ import annotations


class NoWingError(Exception):
    """Base class for errors surfaced to operators.

    ``code`` is a short machine-readable tag; ``hint`` is a one-line
    remediation shown by the CLI.
    """

    default_hint: str | None = None

    def __init__(self, message: str, code: str = "error", hint: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.hint = hint if hint is not None else self.default_hint
