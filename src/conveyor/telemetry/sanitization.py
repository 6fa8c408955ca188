"""Sanitize error messages before recording them on spans or in logs."""

from __future__ import annotations

import re

_SENSITIVE_PAIR = re.compile(
    r"(?P<key>password|secret_key|access_key|token|api_key|authorization|credential)"
    r"(?P<sep>\s*[=:]\s*)\S+",
    re.IGNORECASE,
)
_URL_USERINFO = re.compile(r"://[^@/\s]+:[^@/\s]+@")


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact credentials from msg and truncate it to max_length.

    Database URLs handed to migrations carry ``user:password@`` userinfo, and
    provider errors may echo ``token=...`` style pairs.

    Example:
        >>> sanitize_error_message("connect postgres://app:hunter2@db/app failed")
        'connect postgres://<REDACTED>@db/app failed'
    """
    redacted = _URL_USERINFO.sub("://<REDACTED>@", msg)
    redacted = _SENSITIVE_PAIR.sub(r"\g<key>\g<sep><REDACTED>", redacted)
    return redacted[:max_length]


__all__: list[str] = ["sanitize_error_message"]
