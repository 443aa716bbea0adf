"""
Error taxonomy for the Alloy connection flow.

Everything raised by ``connectors`` derives from ``AlloyError`` so the API
layer can map it to a JSON response in one place.  ``BrokerError`` and its
subclasses come from unsuccessful calls to the Alloy API; the rest are
raised locally before (or instead of) a network call.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AlloyError(Exception):
    """Base for all connection-flow errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "type": type(self).__name__,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ConfigurationError(AlloyError):
    """A required environment value is missing."""

    status_code = 500

    def __init__(self, message: str, *, variable: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.variable = variable


class ValidationError(AlloyError):
    """Malformed or incomplete request."""

    status_code = 400


class OAuthProviderError(AlloyError):
    """The OAuth provider redirected back with ``error`` set."""

    status_code = 400

    def __init__(self, error: str, description: Optional[str] = None) -> None:
        message = f"OAuth provider error: {error}"
        if description:
            message += f" ({description})"
        super().__init__(message, details={"error": error, "error_description": description})
        self.error = error
        self.error_description = description


class OAuthTimeoutError(AlloyError, TimeoutError):
    """No callback arrived within the session timeout."""

    status_code = 504


class BrokerError(AlloyError):
    """The Alloy API answered with an unsuccessful response."""

    status_code = 502


class AuthorizationError(BrokerError):
    """The broker rejected the authentication method or credentials."""

    status_code = 401


class NotFoundError(BrokerError):
    """Unknown connection / credential id."""

    status_code = 404


class TransientNetworkError(BrokerError):
    """Timeout, connection failure or 5xx from the broker."""

    status_code = 503


_AUTH_NOT_FOUND = "AUTHENTICATION_NOT_FOUND"


def error_message(payload: Any, fallback: str) -> str:
    """Best human-readable message from an error payload."""
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
    return fallback


def error_for_status(status: int, message: str, payload: Any = None) -> BrokerError:
    """Map an unsuccessful HTTP response to the matching ``BrokerError`` subclass."""
    code = payload.get("code") if isinstance(payload, dict) else None
    if status in (401, 403) or code == _AUTH_NOT_FOUND:
        return AuthorizationError(message, status_code=status if status in (401, 403) else 400, details=payload)
    if status == 404:
        return NotFoundError(message, details=payload)
    if status >= 500:
        return TransientNetworkError(message, status_code=status, details=payload)
    return BrokerError(message, status_code=status, details=payload)
