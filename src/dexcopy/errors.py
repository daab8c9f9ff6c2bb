from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dexcopy.schemas import ExecutionAttempt


class ConfigError(ValueError):
    """Configuration missing or malformed. The previously active config stays in force."""


class SecretsError(ValueError):
    pass


class ConnectionFault(Exception):
    """Transport-level stream failure (reset, auth rejection, deadline)."""

    def __init__(self, message: str, *, code: str = "") -> None:
        super().__init__(message)
        self.code = code


class StreamEnd(Exception):
    """Orderly server-initiated close of the subscription. Not a failure."""


class DecodeError(ValueError):
    pass


class ExecutionError(Exception):
    reason = "execution_error"

    def __init__(self, message: str, *, attempt: ExecutionAttempt | None = None) -> None:
        super().__init__(message)
        self.attempt = attempt


class QuoteError(ExecutionError):
    reason = "quote_error"


class NoRoute(QuoteError):
    reason = "no_route"


class BuildError(ExecutionError):
    reason = "build_error"


class SignError(ExecutionError):
    reason = "sign_error"


class BroadcastError(ExecutionError):
    reason = "broadcast_error"


class FailedOnChain(ExecutionError):
    reason = "failed_on_chain"

    def __init__(
        self,
        message: str,
        *,
        on_chain_error: Any = None,
        attempt: ExecutionAttempt | None = None,
    ) -> None:
        super().__init__(message, attempt=attempt)
        self.on_chain_error = on_chain_error


class ConfirmationTimeout(Exception):
    """Confirmation did not arrive in time. Degrades to a manual status check."""
