"""
llmrelay Core Module

Data model, error taxonomy and configuration shared by every component.
"""

from .models import (
    # Enums
    ComplexityTier,
    ResponseFormat,
    Role,
    AttemptOutcome,
    ALL_TIERS,

    # Backends
    BackendDescriptor,

    # Requests
    Message,
    RequestContext,

    # Results
    TokenUsage,
    GenerationResult,
    AttemptTrace,
    RoutingDecision,
    RouteResult,
)

from .errors import (
    ErrorKind,
    ErrorDetails,
    RelayError,
    AuthError,
    RateLimitedError,
    TransientNetworkError,
    ServerError,
    InvalidRequestError,
    CircuitOpenError,
    RequestTimeoutError,
    AllBackendsExhaustedError,
    ConfigError,
    handle_openai_compatible_error,
    handle_gemini_error,
    normalize_error,
)

from .config import (
    BackendSettings,
    CircuitBreakerConfig,
    RetryPolicy,
    HealthConfig,
    ClassifierConfig,
    RankingWeights,
    RelayConfig,
    DEFAULT_BACKENDS,
    load_config_from_env,
)

__all__ = [
    # Enums
    "ComplexityTier",
    "ResponseFormat",
    "Role",
    "AttemptOutcome",
    "ALL_TIERS",

    # Models
    "BackendDescriptor",
    "Message",
    "RequestContext",
    "TokenUsage",
    "GenerationResult",
    "AttemptTrace",
    "RoutingDecision",
    "RouteResult",

    # Errors
    "ErrorKind",
    "ErrorDetails",
    "RelayError",
    "AuthError",
    "RateLimitedError",
    "TransientNetworkError",
    "ServerError",
    "InvalidRequestError",
    "CircuitOpenError",
    "RequestTimeoutError",
    "AllBackendsExhaustedError",
    "ConfigError",
    "handle_openai_compatible_error",
    "handle_gemini_error",
    "normalize_error",

    # Config
    "BackendSettings",
    "CircuitBreakerConfig",
    "RetryPolicy",
    "HealthConfig",
    "ClassifierConfig",
    "RankingWeights",
    "RelayConfig",
    "DEFAULT_BACKENDS",
    "load_config_from_env",
]
