"""
Token redaction — keep access / refresh tokens and API keys out of logs
and API responses.  Only masked previews ever leave the process.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional

_REPLACEMENT = "[REDACTED]"

_ACCESS_FIELDS = ("accessToken", "access_token")
_REFRESH_FIELDS = ("refreshToken", "refresh_token")
_META_FIELDS = {
    "tokenType": ("tokenType", "token_type"),
    "expiresAt": ("expiresAt", "expires_at", "expiry"),
    "scopes": ("scopes", "scope"),
}

_SENSITIVE_RES = [
    re.compile(r"\bBearer\s+[A-Za-z0-9._~+/=\-]+", flags=re.IGNORECASE),
    re.compile(r"\b(access_token|refresh_token|code|api[_-]?key)=([^&\s\"']+)", flags=re.IGNORECASE),
    re.compile(r"(['\"](?:accessToken|refreshToken|access_token|refresh_token)['\"]\s*:\s*)['\"][^'\"]+['\"]"),
]


def mask_secret(value: Optional[str], visible: int = 10) -> Optional[str]:
    """``"sk_live_abcdef123456"`` → ``"sk_live_ab..."``."""
    if not value:
        return None
    return f"{value[:visible]}..."


def redact_text(text: str) -> str:
    """Scrub bearer tokens and token-like query/JSON values from a string."""
    out = _SENSITIVE_RES[0].sub(f"Bearer {_REPLACEMENT}", text)
    out = _SENSITIVE_RES[1].sub(lambda m: f"{m.group(1)}={_REPLACEMENT}", out)
    out = _SENSITIVE_RES[2].sub(lambda m: f"{m.group(1)}\"{_REPLACEMENT}\"", out)
    return out


def _first(raw: Mapping[str, Any], fields) -> Any:
    for field in fields:
        if raw.get(field):
            return raw[field]
    return None


def _token_source(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    """Tokens may sit at the top level or under ``tokens`` / ``credentials``."""
    for key in ("tokens", "credentials", "oauth"):
        nested = raw.get(key)
        if isinstance(nested, Mapping):
            return nested
    return raw


def redact_token_info(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Summarize the token metadata of a credential payload.

    Returns ``hasTokens`` plus masked previews and non-secret metadata
    (type, expiry, scopes).  Raw token values are never copied.
    """
    source = _token_source(raw)
    access = _first(source, _ACCESS_FIELDS)
    refresh = _first(source, _REFRESH_FIELDS)

    info: Dict[str, Any] = {
        "hasTokens": bool(access or refresh),
        "accessToken": mask_secret(access, visible=6) if access else None,
        "refreshToken": mask_secret(refresh, visible=6) if refresh else None,
    }
    for out_key, fields in _META_FIELDS.items():
        info[out_key] = _first(source, fields)
    return info


def strip_tokens(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of ``raw`` with every token field replaced by ``[REDACTED]``."""
    cleaned: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in _ACCESS_FIELDS or key in _REFRESH_FIELDS:
            cleaned[key] = _REPLACEMENT
        elif isinstance(value, Mapping):
            cleaned[key] = strip_tokens(value)
        else:
            cleaned[key] = value
    return cleaned


# uvicorn's loggers carry their own handlers and do not propagate to root.
LOG_TARGETS = ("", "uvicorn", "uvicorn.error", "uvicorn.access")


def _redact_arg(value: Any) -> Any:
    return redact_text(value) if isinstance(value, str) else value


class RedactingFilter(logging.Filter):
    """
    Apply ``redact_text`` to every log record before it is formatted.

    Arguments are scrubbed in place so formatters that unpack
    ``record.args`` (uvicorn's access formatter) keep working.  If the
    rendered message still leaks, the record collapses to the redacted text.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if isinstance(record.args, tuple):
            record.args = tuple(_redact_arg(a) for a in record.args)
        elif isinstance(record.args, Mapping):
            record.args = {k: _redact_arg(v) for k, v in record.args.items()}

        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_text(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def install_redacting_filter(names: Iterable[str] = LOG_TARGETS) -> None:
    """Attach ``RedactingFilter`` to the handlers of the named loggers.

    ``""`` is the root logger.  Safe to call multiple times.
    """
    for name in names:
        for handler in logging.getLogger(name or None).handlers:
            if not any(isinstance(f, RedactingFilter) for f in handler.filters):
                handler.addFilter(RedactingFilter())
