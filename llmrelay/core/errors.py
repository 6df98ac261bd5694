"""
llmrelay - Error Definitions

Error taxonomy shared by adapters, the retry executor, circuit breakers and
the fallback chain.

Every backend failure is normalised exactly once, inside the adapter, into
one of the classes below. Each class declares whether the retry executor may
retry it and whether it counts toward the backend's circuit breaker.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from .models import AttemptTrace


class ErrorKind(str, Enum):
    """Error classification exposed to callers."""
    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    SERVER_ERROR = "server_error"
    INVALID_REQUEST = "invalid_request"
    CIRCUIT_OPEN = "circuit_open"
    TIMEOUT = "timeout"
    ALL_BACKENDS_EXHAUSTED = "all_backends_exhausted"


@dataclass
class ErrorDetails:
    """Full error information for API responses and logs."""
    # Core fields (always present)
    kind: ErrorKind
    code: str
    message: str

    # Context fields
    backend: Optional[str] = None
    request_id: str = ""

    # Recovery fields
    retryable: bool = False
    retry_after: Optional[int] = None

    # Debug fields
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }

        if self.backend:
            result["backend"] = self.backend
        if self.request_id:
            result["request_id"] = self.request_id
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class RelayError(Exception):
    """Base exception for all llmrelay errors."""

    kind: ErrorKind = ErrorKind.SERVER_ERROR

    # Whether the retry executor may try the same backend again
    retryable: bool = False

    # Whether a failure of this class is recorded by the circuit breaker
    counts_toward_circuit: bool = True

    def __init__(
        self,
        error: ErrorDetails,
        status_code: int = 500,
        attempts: Optional[List["AttemptTrace"]] = None,
    ):
        self.error = error
        self.status_code = status_code
        self.attempts: List["AttemptTrace"] = list(attempts or [])
        super().__init__(error.message)

    @property
    def backend(self) -> Optional[str]:
        return self.error.backend

    def to_response(self) -> Dict[str, Any]:
        """Failure shape of the Route operation."""
        return {
            "error_kind": self.kind.value,
            "message": self.error.message,
            "attempts": [a.to_dict() for a in self.attempts],
        }


# ============================================================
# Backend Errors
# ============================================================

class AuthError(RelayError):
    """Backend rejected our credentials. Never retried."""

    kind = ErrorKind.AUTH_ERROR
    retryable = False
    counts_toward_circuit = False

    def __init__(self, backend: str, message: str = "", request_id: str = ""):
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code="backend_auth_error",
                message=message or f"{backend} rejected the configured credentials",
                backend=backend,
                request_id=request_id,
            ),
            status_code=401,
        )


class RateLimitedError(RelayError):
    """Backend quota or rate limit exceeded."""

    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        backend: str,
        retry_after: Optional[int] = None,
        message: str = "",
        request_id: str = "",
    ):
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code="rate_limited",
                message=message or f"{backend} rate limit exceeded",
                backend=backend,
                request_id=request_id,
                retryable=True,
                retry_after=retry_after,
            ),
            status_code=429,
        )


class TransientNetworkError(RelayError):
    """Connection failure or read timeout talking to the backend."""

    kind = ErrorKind.TRANSIENT_NETWORK
    retryable = True

    def __init__(
        self,
        backend: str,
        message: str = "",
        code: str = "network_error",
        request_id: str = "",
    ):
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code=code,
                message=message or f"Network error talking to {backend}",
                backend=backend,
                request_id=request_id,
                retryable=True,
            ),
            status_code=502,
        )


class ServerError(RelayError):
    """Backend returned a 5xx or an unusable response."""

    kind = ErrorKind.SERVER_ERROR
    retryable = True

    def __init__(
        self,
        backend: str,
        upstream_status: Optional[int] = None,
        message: str = "",
        code: str = "",
        request_id: str = "",
    ):
        code_map = {
            500: "upstream_500",
            502: "upstream_502",
            503: "upstream_503",
            504: "upstream_504",
        }
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code=code or code_map.get(upstream_status, "upstream_error"),
                message=message or f"{backend} returned error {upstream_status}",
                backend=backend,
                request_id=request_id,
                retryable=True,
                details={"upstream_status": upstream_status} if upstream_status else {},
            ),
            status_code=502,
        )


class InvalidRequestError(RelayError):
    """Request was rejected as malformed. Never retried."""

    kind = ErrorKind.INVALID_REQUEST
    retryable = False
    counts_toward_circuit = False

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        param: str = "",
        request_id: str = "",
    ):
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code="invalid_request",
                message=message,
                backend=backend,
                request_id=request_id,
                details={"param": param} if param else {},
            ),
            status_code=400,
        )


# ============================================================
# Engine Errors
# ============================================================

class CircuitOpenError(RelayError):
    """Breaker rejected the call without contacting the backend."""

    kind = ErrorKind.CIRCUIT_OPEN
    retryable = False
    counts_toward_circuit = False

    def __init__(self, backend: str, retry_after: Optional[int] = None, request_id: str = ""):
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code="circuit_open",
                message=f"Circuit for {backend} is open",
                backend=backend,
                request_id=request_id,
                retry_after=retry_after,
            ),
            status_code=503,
        )


class RequestTimeoutError(RelayError):
    """Request deadline elapsed before any backend succeeded."""

    kind = ErrorKind.TIMEOUT
    retryable = False
    counts_toward_circuit = False

    def __init__(
        self,
        message: str = "Request deadline exceeded",
        attempts: Optional[List["AttemptTrace"]] = None,
        backend: Optional[str] = None,
        request_id: str = "",
    ):
        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code="deadline_exceeded",
                message=message,
                backend=backend,
                request_id=request_id,
            ),
            status_code=504,
            attempts=attempts,
        )


class AllBackendsExhaustedError(RelayError):
    """Every candidate in the fallback chain failed (or none was eligible)."""

    kind = ErrorKind.ALL_BACKENDS_EXHAUSTED
    retryable = False
    counts_toward_circuit = False

    def __init__(
        self,
        message: str = "",
        attempts: Optional[List["AttemptTrace"]] = None,
        last_error: Optional[RelayError] = None,
        request_id: str = "",
    ):
        attempts = list(attempts or [])
        tried = []
        for trace in attempts:
            if trace.backend not in tried:
                tried.append(trace.backend)

        details: Dict[str, Any] = {"backends_tried": tried}
        if last_error is not None:
            details["last_error"] = last_error.error.to_dict()["error"]

        if not message:
            if tried:
                message = f"All backends failed: {', '.join(tried)}"
            else:
                message = "No eligible backend for this request"

        super().__init__(
            ErrorDetails(
                kind=self.kind,
                code="all_backends_exhausted",
                message=message,
                request_id=request_id,
                details=details,
            ),
            status_code=503,
            attempts=attempts,
        )
        self.last_error = last_error


class ConfigError(ValueError):
    """Invalid configuration value."""
    pass


# ============================================================
# Provider Error Normalisation
# ============================================================

def _parse_retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _network_error(error: Exception, backend: str, request_id: str) -> Optional[RelayError]:
    """Map httpx transport failures. Returns None for anything else."""
    if isinstance(error, httpx.TimeoutException):
        code = "connect_timeout" if isinstance(error, httpx.ConnectTimeout) else "read_timeout"
        return TransientNetworkError(
            backend,
            f"{backend} did not respond within timeout",
            code=code,
            request_id=request_id,
        )

    if isinstance(error, (httpx.ConnectError, httpx.RemoteProtocolError, httpx.NetworkError)):
        return TransientNetworkError(backend, f"Failed to connect to {backend}: {error}", request_id=request_id)

    return None


def _status_error(
    backend: str,
    response: httpx.Response,
    message: str,
    request_id: str,
) -> RelayError:
    status_code = response.status_code

    if status_code in (401, 403):
        return AuthError(backend, f"{backend} authentication failed: {message}", request_id)

    if status_code == 429:
        return RateLimitedError(backend, _parse_retry_after(response), request_id=request_id)

    if status_code >= 500:
        return ServerError(backend, status_code, message, request_id=request_id)

    # 400, 404, 422 and the rest of 4xx
    return InvalidRequestError(message, backend=backend, request_id=request_id)


def handle_openai_compatible_error(
    error: Exception,
    backend: str,
    request_id: str = "",
) -> RelayError:
    """
    Convert an OpenAI-compatible HTTP error (Groq, Cerebras, OpenAI) into
    the relay taxonomy.

    Error body format:
    {
        "error": {
            "message": "...",
            "type": "invalid_request_error|authentication_error|...",
            "code": "invalid_api_key|model_not_found|..."
        }
    }
    """
    if isinstance(error, RelayError):
        return error

    mapped = _network_error(error, backend, request_id)
    if mapped is not None:
        return mapped

    if isinstance(error, httpx.HTTPStatusError):
        try:
            error_info = error.response.json().get("error", {})
            if isinstance(error_info, dict):
                message = error_info.get("message", str(error))
            else:
                message = str(error_info)
        except (ValueError, AttributeError):
            message = error.response.text or str(error)

        return _status_error(backend, error.response, message, request_id)

    return TransientNetworkError(backend, str(error) or type(error).__name__, code="unknown_error", request_id=request_id)


def handle_gemini_error(
    error: Exception,
    backend: str,
    request_id: str = "",
) -> RelayError:
    """
    Convert a Gemini generateContent error into the relay taxonomy.

    Error body format:
    {
        "error": {
            "code": 400,
            "message": "...",
            "status": "INVALID_ARGUMENT|PERMISSION_DENIED|RESOURCE_EXHAUSTED|..."
        }
    }
    """
    if isinstance(error, RelayError):
        return error

    mapped = _network_error(error, backend, request_id)
    if mapped is not None:
        return mapped

    if isinstance(error, httpx.HTTPStatusError):
        status = ""
        try:
            error_info = error.response.json().get("error", {})
            message = error_info.get("message", str(error))
            status = error_info.get("status", "")
        except (ValueError, AttributeError):
            message = error.response.text or str(error)

        # Gemini reports bad keys as 400 INVALID_ARGUMENT with this reason
        if status == "UNAUTHENTICATED" or "API key not valid" in message:
            return AuthError(backend, f"{backend} authentication failed: {message}", request_id)

        if status == "RESOURCE_EXHAUSTED":
            return RateLimitedError(backend, _parse_retry_after(error.response), request_id=request_id)

        return _status_error(backend, error.response, message, request_id)

    return TransientNetworkError(backend, str(error) or type(error).__name__, code="unknown_error", request_id=request_id)


def normalize_error(error: BaseException, backend: str, request_id: str = "") -> RelayError:
    """Wrap anything an adapter let escape into the taxonomy."""
    if isinstance(error, RelayError):
        return error
    return handle_openai_compatible_error(error, backend, request_id)  # type: ignore[arg-type]
