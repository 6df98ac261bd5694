"""
llmrelay - Configuration

Typed configuration for backends and resilience policy.

Sources:
- RelayConfig.from_dict(): plain mapping (YAML/JSON loaded by the caller)
- load_config_from_env(): environment variables

Environment variables:
    RELAY_BACKENDS                  comma separated backend names (default: groq,gemini,cerebras)
    RELAY_USE_STUB_ADAPTERS         replace every adapter with the deterministic stub
    RELAY_DEFAULT_DEADLINE_MS       deadline applied when a request carries none
    RELAY_RANKING_STRATEGY          composite (default) or priority

    <NAME>_KIND                     adapter variant (groq, cerebras, openai, gemini, stub)
    <NAME>_API_KEY, <NAME>_BASE_URL, <NAME>_MODEL
    <NAME>_PRIORITY                 priority weight, higher wins ties
    <NAME>_TIERS                    e.g. "low,medium"
    <NAME>_RPM, <NAME>_RPD          request quotas per minute / per day
    <NAME>_COST_FACTOR              USD per 1K tokens
    <NAME>_TIMEOUT_MS               per-call HTTP timeout
    <NAME>_ENABLED                  "false" removes the backend

    RELAY_CB_FAILURE_THRESHOLD, RELAY_CB_RECOVERY_TIMEOUT_MS,
    RELAY_CB_SUCCESS_THRESHOLD, RELAY_CB_MONITORING_WINDOW_MS

    RELAY_RETRY_MAX_ATTEMPTS, RELAY_RETRY_BASE_DELAY_MS,
    RELAY_RETRY_MULTIPLIER, RELAY_RETRY_JITTER_FACTOR, RELAY_RETRY_MAX_DELAY_MS

    RELAY_HEALTH_SHORT_WINDOW_S, RELAY_HEALTH_LONG_WINDOW_S,
    RELAY_HEALTH_PROBE_INTERVAL_S, RELAY_HEALTH_PROBE_TIMEOUT_S
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import ConfigError
from .models import ALL_TIERS, BackendDescriptor, ComplexityTier


TRUTHY = {"1", "true", "yes", "on"}


# ============================================================
# Resilience Policy
# ============================================================

@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    # Consecutive counted failures that trip the breaker
    failure_threshold: int = 5

    # Time to wait in OPEN before admitting a trial (seconds)
    recovery_timeout_seconds: float = 30.0

    # Consecutive trial successes needed to close from HALF_OPEN
    success_threshold: int = 2

    # Failures older than this no longer count toward the threshold (seconds)
    monitoring_window_seconds: float = 60.0

    def validate(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ConfigError("success_threshold must be >= 1")
        if self.recovery_timeout_seconds < 0 or self.monitoring_window_seconds <= 0:
            raise ConfigError("circuit breaker timings must be positive")


@dataclass
class RetryPolicy:
    """Per-backend retry policy with exponential backoff."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    multiplier: float = 2.0

    # Extra random delay as a fraction of the computed delay
    jitter_factor: float = 0.25

    max_delay_seconds: float = 8.0

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.multiplier < 1.0:
            raise ConfigError("multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ConfigError("jitter_factor must be within [0, 1]")


@dataclass
class HealthConfig:
    """Health monitor windows and active probing."""
    short_window_seconds: float = 3600.0
    long_window_seconds: float = 86400.0
    probe_interval_seconds: float = 30.0
    probe_timeout_seconds: float = 5.0

    # Most recent attempts kept for the latency percentiles
    latency_samples: int = 1000

    def validate(self) -> None:
        if self.short_window_seconds <= 0 or self.long_window_seconds < self.short_window_seconds:
            raise ConfigError("long_window_seconds must be >= short_window_seconds > 0")
        if self.probe_interval_seconds <= 0 or self.probe_timeout_seconds <= 0:
            raise ConfigError("probe timings must be positive")
        if self.latency_samples < 1:
            raise ConfigError("latency_samples must be >= 1")


@dataclass
class ClassifierConfig:
    """
    Weights and thresholds for the complexity heuristic.

    Each factor yields a value in [0, 1] that is multiplied by its weight.
    The summed score is mapped to a tier with the two thresholds.
    """
    length_weight: float = 0.25
    length_thresholds: Tuple[int, ...] = (50, 200, 500)
    length_values: Tuple[float, ...] = (0.1, 0.3, 0.6, 0.9)

    keyword_weight: float = 0.3
    keyword_step: float = 0.15
    keywords: Tuple[str, ...] = (
        "first", "then", "next", "finally", "step", "plan", "organize",
        "compare", "contrast", "evaluate", "analyze", "analyse", "optimize",
        "depending", "multiple", "several", "tradeoff", "trade-off",
        "pros and cons", "explain why", "itinerary", "schedule", "budget",
    )

    context_weight: float = 0.1
    context_step: float = 0.25

    output_weight: float = 0.15
    output_thresholds: Tuple[int, ...] = (512, 2000, 4000)
    output_values: Tuple[float, ...] = (0.0, 0.3, 0.6, 1.0)

    structured_weight: float = 0.2

    low_threshold: float = 0.3
    medium_threshold: float = 0.7

    def validate(self) -> None:
        if len(self.length_values) != len(self.length_thresholds) + 1:
            raise ConfigError("length_values needs one more entry than length_thresholds")
        if len(self.output_values) != len(self.output_thresholds) + 1:
            raise ConfigError("output_values needs one more entry than output_thresholds")
        if list(self.length_values) != sorted(self.length_values):
            raise ConfigError("length_values must be non-decreasing")
        if list(self.output_values) != sorted(self.output_values):
            raise ConfigError("output_values must be non-decreasing")
        if not 0 <= self.low_threshold <= self.medium_threshold:
            raise ConfigError("low_threshold must be <= medium_threshold")


@dataclass
class RankingWeights:
    """Weights of the composite backend score."""
    priority: float = 0.4
    reliability: float = 0.3
    latency: float = 0.2
    quota: float = 0.1

    # p50 latency at which the latency component drops to 0.5
    latency_reference_ms: float = 1000.0


RANKING_STRATEGIES = ("composite", "priority")


# ============================================================
# Backends
# ============================================================

@dataclass
class BackendSettings:
    """Configuration for one backend."""
    name: str
    kind: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    priority_weight: float = 1.0
    tiers: FrozenSet[ComplexityTier] = ALL_TIERS
    requests_per_minute: Optional[int] = None
    requests_per_day: Optional[int] = None
    cost_factor: float = 0.0
    timeout_seconds: float = 30.0
    enabled: bool = True

    def to_descriptor(self) -> BackendDescriptor:
        return BackendDescriptor(
            name=self.name,
            kind=self.kind,
            model=self.model,
            priority_weight=self.priority_weight,
            supported_tiers=frozenset(self.tiers),
            requests_per_minute=self.requests_per_minute,
            requests_per_day=self.requests_per_day,
            cost_factor=self.cost_factor,
        )


# Defaults for the stock deployment; any field can be overridden per backend
DEFAULT_BACKENDS: Dict[str, Dict[str, Any]] = {
    "groq": {
        "kind": "groq",
        "model": "llama-3.1-70b-versatile",
        "base_url": "https://api.groq.com/openai/v1",
        "priority_weight": 3.0,
        "tiers": "low,medium",
        "requests_per_minute": 200,
        "cost_factor": 0.00045,
        "timeout_seconds": 10.0,
    },
    "gemini": {
        "kind": "gemini",
        "model": "gemini-1.5-flash",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "priority_weight": 2.0,
        "tiers": "low,medium,high",
        "requests_per_minute": 100,
        "cost_factor": 0.001,
        "timeout_seconds": 20.0,
    },
    "cerebras": {
        "kind": "cerebras",
        "model": "llama3.1-70b",
        "base_url": "https://api.cerebras.ai/v1",
        "priority_weight": 1.0,
        "tiers": "medium,high",
        "requests_per_minute": 60,
        "cost_factor": 0.0006,
        "timeout_seconds": 30.0,
    },
}


@dataclass
class RelayConfig:
    """Complete engine configuration."""
    backends: List[BackendSettings] = field(default_factory=list)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    health: HealthConfig = field(default_factory=HealthConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    ranking: RankingWeights = field(default_factory=RankingWeights)
    ranking_strategy: str = "composite"  # composite | priority
    default_deadline_ms: float = 30000.0
    use_stub_adapters: bool = False

    def validate(self) -> None:
        names = [b.name for b in self.backends]
        if len(names) != len(set(names)):
            raise ConfigError("Backend names must be unique")
        self.circuit_breaker.validate()
        self.retry.validate()
        self.health.validate()
        self.classifier.validate()
        if self.ranking_strategy not in RANKING_STRATEGIES:
            raise ConfigError(f"Unknown ranking strategy: {self.ranking_strategy}")
        if self.default_deadline_ms <= 0:
            raise ConfigError("default_deadline_ms must be positive")

    def enabled_backends(self) -> List[BackendSettings]:
        return [b for b in self.backends if b.enabled]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RelayConfig":
        """
        Build config from a plain mapping.

        Durations may be given in milliseconds (`recovery_timeout_ms`,
        `monitoring_window_ms`, `base_delay_ms`, `max_delay_ms`) or in
        seconds with the dataclass field names.
        """
        backends = []
        for entry in data.get("backends", []):
            entry = dict(entry)
            name = _require(entry, "name")
            merged = dict(DEFAULT_BACKENDS.get(name, {}))
            merged.update(entry)
            backends.append(_backend_from_mapping(name, merged))

        cb = dict(data.get("circuit_breaker", {}))
        _ms_to_seconds(cb, "recovery_timeout_ms", "recovery_timeout_seconds")
        _ms_to_seconds(cb, "monitoring_window_ms", "monitoring_window_seconds")

        retry = dict(data.get("retry", {}))
        _ms_to_seconds(retry, "base_delay_ms", "base_delay_seconds")
        _ms_to_seconds(retry, "max_delay_ms", "max_delay_seconds")

        classifier = dict(data.get("classifier", {}))
        for key in ("length_thresholds", "length_values", "output_thresholds", "output_values", "keywords"):
            if key in classifier:
                classifier[key] = tuple(classifier[key])

        try:
            config = cls(
                backends=backends,
                circuit_breaker=CircuitBreakerConfig(**cb),
                retry=RetryPolicy(**retry),
                health=HealthConfig(**dict(data.get("health", {}))),
                classifier=ClassifierConfig(**classifier),
                ranking=RankingWeights(**dict(data.get("ranking", {}))),
                ranking_strategy=str(data.get("ranking_strategy", "composite")).lower(),
                default_deadline_ms=float(data.get("default_deadline_ms", 30000.0)),
                use_stub_adapters=_parse_bool(data.get("use_stub_adapters", False)),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e

        if config.use_stub_adapters:
            for backend in config.backends:
                backend.kind = "stub"

        config.validate()
        return config


# ============================================================
# Parsing Helpers
# ============================================================

def _require(mapping: Mapping[str, Any], key: str) -> Any:
    if key not in mapping or mapping[key] in (None, ""):
        raise ConfigError(f"Missing required configuration key: {key}")
    return mapping[key]


def _ms_to_seconds(mapping: Dict[str, Any], ms_key: str, seconds_key: str) -> None:
    if ms_key in mapping:
        mapping[seconds_key] = float(mapping.pop(ms_key)) / 1000.0


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY


def _parse_tiers(value: Any) -> FrozenSet[ComplexityTier]:
    if isinstance(value, str):
        items = [v.strip() for v in value.split(",") if v.strip()]
    else:
        items = list(value)
    try:
        tiers = frozenset(ComplexityTier.parse(v) for v in items)
    except ValueError as e:
        raise ConfigError(f"Invalid tier in {value!r}") from e
    if not tiers:
        raise ConfigError("A backend must support at least one tier")
    return tiers


def _optional_int(value: Any, key: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from e
    return parsed if parsed > 0 else None


def _float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number, got {value!r}") from e


def _backend_from_mapping(name: str, data: Mapping[str, Any]) -> BackendSettings:
    timeout = data.get("timeout_seconds", 30.0)
    if "timeout_ms" in data:
        timeout = _float(data["timeout_ms"], "timeout_ms") / 1000.0

    return BackendSettings(
        name=name,
        kind=str(data.get("kind", name)),
        model=str(_require(data, "model")),
        api_key=data.get("api_key") or None,
        base_url=data.get("base_url") or None,
        priority_weight=_float(data.get("priority_weight", 1.0), "priority_weight"),
        tiers=_parse_tiers(data.get("tiers", "low,medium,high")),
        requests_per_minute=_optional_int(data.get("requests_per_minute"), "requests_per_minute"),
        requests_per_day=_optional_int(data.get("requests_per_day"), "requests_per_day"),
        cost_factor=_float(data.get("cost_factor", 0.0), "cost_factor"),
        timeout_seconds=_float(timeout, "timeout_seconds"),
        enabled=_parse_bool(data.get("enabled", True)),
    )


def load_config_from_env(env: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """
    Build config from environment variables.

    Unset per-backend variables fall back to DEFAULT_BACKENDS.
    """
    env = os.environ if env is None else env

    names = [
        n.strip().lower()
        for n in env.get("RELAY_BACKENDS", ",".join(DEFAULT_BACKENDS)).split(",")
        if n.strip()
    ]

    backends = []
    for name in names:
        prefix = name.upper().replace("-", "_")
        entry: Dict[str, Any] = {"name": name}

        env_map = {
            "kind": f"{prefix}_KIND",
            "api_key": f"{prefix}_API_KEY",
            "base_url": f"{prefix}_BASE_URL",
            "model": f"{prefix}_MODEL",
            "priority_weight": f"{prefix}_PRIORITY",
            "tiers": f"{prefix}_TIERS",
            "requests_per_minute": f"{prefix}_RPM",
            "requests_per_day": f"{prefix}_RPD",
            "cost_factor": f"{prefix}_COST_FACTOR",
            "timeout_ms": f"{prefix}_TIMEOUT_MS",
            "enabled": f"{prefix}_ENABLED",
        }
        for key, var in env_map.items():
            if env.get(var, "") != "":
                entry[key] = env[var]

        # Gemini keys are commonly exported under the Google name
        if name == "gemini" and "api_key" not in entry and env.get("GOOGLE_API_KEY"):
            entry["api_key"] = env["GOOGLE_API_KEY"]

        backends.append(entry)

    circuit_breaker: Dict[str, Any] = {}
    _env_number(env, "RELAY_CB_FAILURE_THRESHOLD", circuit_breaker, "failure_threshold", int)
    _env_number(env, "RELAY_CB_RECOVERY_TIMEOUT_MS", circuit_breaker, "recovery_timeout_ms", float)
    _env_number(env, "RELAY_CB_SUCCESS_THRESHOLD", circuit_breaker, "success_threshold", int)
    _env_number(env, "RELAY_CB_MONITORING_WINDOW_MS", circuit_breaker, "monitoring_window_ms", float)

    retry: Dict[str, Any] = {}
    _env_number(env, "RELAY_RETRY_MAX_ATTEMPTS", retry, "max_attempts", int)
    _env_number(env, "RELAY_RETRY_BASE_DELAY_MS", retry, "base_delay_ms", float)
    _env_number(env, "RELAY_RETRY_MULTIPLIER", retry, "multiplier", float)
    _env_number(env, "RELAY_RETRY_JITTER_FACTOR", retry, "jitter_factor", float)
    _env_number(env, "RELAY_RETRY_MAX_DELAY_MS", retry, "max_delay_ms", float)

    health: Dict[str, Any] = {}
    _env_number(env, "RELAY_HEALTH_SHORT_WINDOW_S", health, "short_window_seconds", float)
    _env_number(env, "RELAY_HEALTH_LONG_WINDOW_S", health, "long_window_seconds", float)
    _env_number(env, "RELAY_HEALTH_PROBE_INTERVAL_S", health, "probe_interval_seconds", float)
    _env_number(env, "RELAY_HEALTH_PROBE_TIMEOUT_S", health, "probe_timeout_seconds", float)

    data: Dict[str, Any] = {
        "backends": backends,
        "circuit_breaker": circuit_breaker,
        "retry": retry,
        "health": health,
        "use_stub_adapters": env.get("RELAY_USE_STUB_ADAPTERS", "false"),
        "ranking_strategy": env.get("RELAY_RANKING_STRATEGY", "composite"),
    }
    if env.get("RELAY_DEFAULT_DEADLINE_MS"):
        data["default_deadline_ms"] = _float(env["RELAY_DEFAULT_DEADLINE_MS"], "RELAY_DEFAULT_DEADLINE_MS")

    return RelayConfig.from_dict(data)


def _env_number(env: Mapping[str, str], var: str, target: Dict[str, Any], key: str, cast) -> None:
    raw = env.get(var, "")
    if raw == "":
        return
    try:
        target[key] = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{var} must be a number, got {raw!r}") from e
