"""
Custom exceptions for the streaming market-data client.

Exception hierarchy:
- StreamError (base)
  - ConfigurationError: Invalid configuration
  - NotEntitledError: Account lacks streaming entitlement (terminal, user-facing)
  - TokenExchangeError: Streaming token could not be obtained (retryable by caller)
  - HandshakeTimeoutError: Handshake did not reach STREAMING in time
  - ResolverFallback: Streamer symbol lookup failed, literal symbol used instead
  - TransportClosedError: WebSocket failed to open or was lost
  - MessageParseError: Invalid/malformed frame or event
"""

from __future__ import annotations

from typing import Any, Optional


class StreamError(Exception):
    """Base exception for all streaming client errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class ConfigurationError(StreamError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)


class NotEntitledError(StreamError):
    """
    Raised when the backend reports the account is not entitled to streaming quotes.

    Retrying will not help; the account holder has to act first.
    """

    DEFAULT_MESSAGE = (
        "Streaming quotes require a registered customer account. "
        "Complete the account opening process to enable streaming."
    )

    def __init__(
        self,
        message: str = DEFAULT_MESSAGE,
        *,
        error_code: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.error_code = error_code
        details = details or {}
        if error_code:
            details["error_code"] = error_code
        super().__init__(message, component=component, details=details)


class TokenExchangeError(StreamError):
    """Raised when the streaming token request fails (HTTP or network)."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status = status
        details = details or {}
        if status is not None:
            details["status"] = status
        super().__init__(message, component=component, details=details)


class HandshakeTimeoutError(StreamError):
    """Raised when the handshake stalls before reaching the streaming state."""

    def __init__(
        self,
        message: str,
        *,
        state: Optional[str] = None,
        timeout_s: Optional[float] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.state = state
        self.timeout_s = timeout_s
        details = details or {}
        if state:
            details["state"] = state
        if timeout_s is not None:
            details["timeout_s"] = timeout_s
        super().__init__(message, component=component, details=details)


class ResolverFallback(StreamError):
    """
    Raised internally when a streamer symbol lookup fails.

    Never escapes the resolver: the symbol is degraded to its literal form.
    """

    def __init__(
        self,
        message: str,
        *,
        symbol: Optional[str] = None,
        status: Optional[int] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.symbol = symbol
        self.status = status
        details = details or {}
        if symbol:
            details["symbol"] = symbol
        if status is not None:
            details["status"] = status
        super().__init__(message, component=component, details=details)


class TransportClosedError(StreamError):
    """Raised or reported when the WebSocket cannot be opened or is lost."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        reason: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.reason = reason
        details = details or {}
        if url:
            details["url"] = url
        if reason:
            details["reason"] = reason
        super().__init__(message, component=component, details=details)


class MessageParseError(StreamError):
    """Raised when a frame or a compact event cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # Don't include raw_data in details to avoid log spam
        super().__init__(message, component=component, details=details)
