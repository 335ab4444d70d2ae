"""Exception hierarchy for palaver.

Only :class:`ProviderError` and :class:`DecodeError` end a turn.  Tool
failures are folded into :class:`~palaver.tools.ToolCallResult` objects
and handed back to the model.
"""

from __future__ import annotations

import logging
from enum import Enum
from types import ModuleType

import httpx

logger = logging.getLogger(__name__)


class PalaverError(Exception):
    """Base class for every error raised by palaver."""


class ProviderErrorKind(Enum):
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    UNKNOWN = "unknown"


class ProviderError(PalaverError):
    """A backend call failed.

    Args:
        kind: Category of the failure.
        message: Human-readable reason.
        provider: Id of the provider that failed, if known.
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        provider: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        prefix = f"[{self.provider}] " if self.provider else ""
        return f"{prefix}{self.kind.value}: {self.message}"


class DecodeError(PalaverError):
    """A stream chunk or tool-call encoding could not be decoded."""


class ToolValidationError(PalaverError):
    """A tool call named an unknown tool or carried unusable arguments."""


class ToolExecutionError(PalaverError):
    """The tool boundary raised or timed out."""


class LoopBoundExceeded(PalaverError):
    """The model kept requesting tools past the configured iteration bound."""


# Checked in order: the timeout class subclasses the connection class in
# both SDKs.
_SDK_ERROR_KINDS = (
    ("AuthenticationError", ProviderErrorKind.AUTHENTICATION),
    ("PermissionDeniedError", ProviderErrorKind.PERMISSION),
    ("RateLimitError", ProviderErrorKind.RATE_LIMIT),
    ("APITimeoutError", ProviderErrorKind.TIMEOUT),
    ("APIConnectionError", ProviderErrorKind.NETWORK),
    ("NotFoundError", ProviderErrorKind.NOT_FOUND),
    ("BadRequestError", ProviderErrorKind.BAD_REQUEST),
    ("UnprocessableEntityError", ProviderErrorKind.BAD_REQUEST),
    ("InternalServerError", ProviderErrorKind.SERVER_ERROR),
    ("APIResponseValidationError", ProviderErrorKind.MALFORMED_RESPONSE),
)

_STATUS_KINDS = {
    400: ProviderErrorKind.BAD_REQUEST,
    401: ProviderErrorKind.AUTHENTICATION,
    403: ProviderErrorKind.PERMISSION,
    404: ProviderErrorKind.NOT_FOUND,
    408: ProviderErrorKind.TIMEOUT,
    422: ProviderErrorKind.BAD_REQUEST,
    429: ProviderErrorKind.RATE_LIMIT,
}

# Errors raised while reading a response body are not wrapped by the SDKs.
TRANSPORT_ERRORS = (httpx.TransportError,)


def _status_of(exc: Exception) -> int | None:
    # openai/anthropic use status_code, google-genai uses code.
    for attr in ("status_code", "code"):
        status = getattr(exc, attr, None)
        if isinstance(status, int) and status >= 400:
            return status
    return None


def classify_sdk_error(
    exc: Exception, sdk: ModuleType, provider: str | None = None,
) -> ProviderError:
    """Wrap an SDK or ``httpx`` transport exception in a ProviderError.

    ``openai`` and ``anthropic`` export the same exception names, so the
    module itself is passed in and inspected.  Other SDKs fall back to
    the HTTP status carried by the exception.
    """
    kind = ProviderErrorKind.UNKNOWN
    for attr, candidate in _SDK_ERROR_KINDS:
        exc_type = getattr(sdk, attr, None)
        if exc_type is not None and isinstance(exc, exc_type):
            kind = candidate
            break
    else:
        status = _status_of(exc)
        if status is not None:
            if status >= 500:
                kind = ProviderErrorKind.SERVER_ERROR
            else:
                kind = _STATUS_KINDS.get(status, kind)
        elif isinstance(exc, (httpx.TimeoutException, TimeoutError)):
            kind = ProviderErrorKind.TIMEOUT
        elif isinstance(exc, (httpx.TransportError, ConnectionError)):
            kind = ProviderErrorKind.NETWORK

    logger.warning(f"Provider {provider or '?'} failed ({kind.value}): {exc}")
    error = ProviderError(kind, str(exc) or type(exc).__name__, provider)
    error.__cause__ = exc
    return error
