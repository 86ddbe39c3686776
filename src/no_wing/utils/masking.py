"""Redaction of AWS credential material before it reaches the audit log.

STS and IAM responses carry secrets under a handful of well known keys
(``Credentials``, ``SecretAccessKey``, ``SessionToken``, the
``X-Amz-Security-Token`` header). Those values are replaced wholesale.
Access key ids are not secret on their own but tie an event to a key, so
they keep only their last four characters wherever they appear, including
inside free-text values such as STS error messages.
"""

from __future__ import annotations

import re

MASK = "[REDACTED]"

_MAX_REDACT_DEPTH = 20

# Compared against keys lowercased with ``-`` and ``_`` removed.
SECRET_KEY_MARKERS: tuple[str, ...] = (
    "credentials",
    "secretaccesskey",
    "secretkey",
    "sessiontoken",
    "securitytoken",
    "privatekey",
    "password",
    "authorization",
)

ACCESS_KEY_ID_KEYS = frozenset({"accesskeyid", "accesskey", "awsaccesskeyid"})

# Long-term (AKIA) and temporary (ASIA) key ids.
_ACCESS_KEY_ID = re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{12}([A-Z0-9]{4})\b")


def _normalise_key(key: object) -> str:
    return str(key).lower().replace("-", "").replace("_", "")


def mask_access_key_ids(text: str) -> str:
    """``ASIAXXXXXXXXXXXX1234`` -> ``****1234`` anywhere in *text*."""
    return _ACCESS_KEY_ID.sub(lambda m: f"****{m.group(1)}", text)


def is_secret_key(key: object) -> bool:
    normalised = _normalise_key(key)
    return any(marker in normalised for marker in SECRET_KEY_MARKERS)


def redact_credentials(
    value: object,
    *,
    depth: int = 0,
    max_depth: int = _MAX_REDACT_DEPTH,
) -> object:
    """Recursively redact credential material in dicts, lists and strings.

    When ``max_depth`` is exceeded the entire sub-tree is replaced with
    :data:`MASK`.
    """
    if depth >= max_depth:
        return MASK
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, val in value.items():
            if is_secret_key(key):
                redacted[key] = MASK
            elif _normalise_key(key) in ACCESS_KEY_ID_KEYS and isinstance(val, str):
                redacted[key] = f"****{val[-4:]}" if len(val) > 4 else MASK
            else:
                redacted[key] = redact_credentials(val, depth=depth + 1, max_depth=max_depth)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact_credentials(item, depth=depth + 1, max_depth=max_depth) for item in value]
    if isinstance(value, str):
        return mask_access_key_ids(value)
    return value
