"""
llmrelay - Prometheus Metrics

Metrics exposed:
- llmrelay_requests_total: Counter of routed requests by tier, backend, outcome
- llmrelay_request_duration_seconds: Histogram of end-to-end route latency
- llmrelay_attempts_total: Counter of backend attempts by outcome
- llmrelay_attempt_duration_seconds: Histogram of single backend call latency
- llmrelay_tokens_total: Counter of tokens used (prompt/completion)
- llmrelay_cost_total: Counter of accumulated cost in USD
- llmrelay_active_requests: Gauge of in-flight HTTP requests
- llmrelay_circuit_breaker_state: Gauge of circuit breaker state per backend
- llmrelay_health_check_*: Active probe results
- llmrelay_fallbacks_total: Counter of hand-offs between backends
- llmrelay_routing_decisions_total: Counter of routing decisions

Usage:
    from llmrelay.observability.metrics import get_metrics, setup_metrics, metrics_endpoint

    setup_metrics()

    metrics = get_metrics()
    metrics.record_attempt(backend="groq", outcome="success", latency_seconds=0.4)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


# 0 = closed (healthy), 1 = half-open, 2 = open (unhealthy)
CIRCUIT_STATE_VALUES = {
    "closed": 0,
    "half_open": 1,
    "open": 2,
}


class MetricsCollector:
    """
    Central metrics collector using the Prometheus client.

    Pass a fresh CollectorRegistry to get an isolated collector (tests).
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.info = Info(
            "llmrelay",
            "llmrelay service information",
            registry=registry,
        )
        self.info.info({"service": "llmrelay"})

        self.requests_total = Counter(
            "llmrelay_requests_total",
            "Total number of routed requests",
            labelnames=["tier", "backend", "outcome", "error_kind"],
            registry=registry,
        )

        # Generation calls typically range from 0.1s to 60s
        self.request_duration = Histogram(
            "llmrelay_request_duration_seconds",
            "End-to-end route duration in seconds",
            labelnames=["tier", "outcome"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 60.0, float("inf")),
            registry=registry,
        )

        self.attempts_total = Counter(
            "llmrelay_attempts_total",
            "Total backend attempts",
            labelnames=["backend", "outcome", "error_kind"],
            registry=registry,
        )

        self.attempt_duration = Histogram(
            "llmrelay_attempt_duration_seconds",
            "Single backend call duration in seconds",
            labelnames=["backend"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")),
            registry=registry,
        )

        self.tokens_total = Counter(
            "llmrelay_tokens_total",
            "Total tokens used",
            labelnames=["backend", "type"],  # type = prompt/completion
            registry=registry,
        )

        self.cost_total = Counter(
            "llmrelay_cost_total",
            "Total cost in USD",
            labelnames=["backend"],
            registry=registry,
        )

        self.active_requests = Gauge(
            "llmrelay_active_requests",
            "Number of currently active HTTP requests",
            labelnames=["endpoint"],
            registry=registry,
        )

        self.circuit_breaker_state = Gauge(
            "llmrelay_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half-open, 2=open)",
            labelnames=["backend"],
            registry=registry,
        )

        self.health_check_duration = Histogram(
            "llmrelay_health_check_duration_seconds",
            "Active probe duration",
            labelnames=["backend"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=registry,
        )

        self.health_check_success = Counter(
            "llmrelay_health_check_success_total",
            "Active probe successes",
            labelnames=["backend"],
            registry=registry,
        )

        self.health_check_failure = Counter(
            "llmrelay_health_check_failure_total",
            "Active probe failures",
            labelnames=["backend"],
            registry=registry,
        )

        self.fallbacks_total = Counter(
            "llmrelay_fallbacks_total",
            "Hand-offs from one backend to the next in a fallback chain",
            labelnames=["from_backend", "to_backend", "reason"],
            registry=registry,
        )

        self.routing_decisions = Counter(
            "llmrelay_routing_decisions_total",
            "Total routing decisions",
            labelnames=["tier", "selected_backend", "degraded"],
            registry=registry,
        )

    def record_request(
        self,
        tier: str,
        backend: Optional[str],
        outcome: str,
        duration_seconds: float,
        error_kind: Optional[str] = None,
    ):
        """Record a completed route call."""
        self.requests_total.labels(
            tier=tier,
            backend=backend or "none",
            outcome=outcome,
            error_kind=error_kind or "none",
        ).inc()

        self.request_duration.labels(tier=tier, outcome=outcome).observe(duration_seconds)

    def record_attempt(
        self,
        backend: str,
        outcome: str,
        latency_seconds: float,
        error_kind: Optional[str] = None,
    ):
        self.attempts_total.labels(
            backend=backend,
            outcome=outcome,
            error_kind=error_kind or "none",
        ).inc()

        # Circuit-open rejections never reached the backend
        if outcome != "circuit_open":
            self.attempt_duration.labels(backend=backend).observe(latency_seconds)

    def record_tokens(self, backend: str, prompt_tokens: int, completion_tokens: int):
        self.tokens_total.labels(backend=backend, type="prompt").inc(prompt_tokens)
        self.tokens_total.labels(backend=backend, type="completion").inc(completion_tokens)

    def record_cost(self, backend: str, cost_usd: float):
        if cost_usd > 0:
            self.cost_total.labels(backend=backend).inc(cost_usd)

    def track_active_request(self, endpoint: str) -> "ActiveRequestTracker":
        """Context manager to track active requests."""
        return ActiveRequestTracker(self, endpoint)

    def set_circuit_breaker_state(self, backend: str, state: str):
        self.circuit_breaker_state.labels(backend=backend).set(CIRCUIT_STATE_VALUES.get(state, 0))

    def record_health_check(self, backend: str, success: bool, duration_seconds: float):
        self.health_check_duration.labels(backend=backend).observe(duration_seconds)

        if success:
            self.health_check_success.labels(backend=backend).inc()
        else:
            self.health_check_failure.labels(backend=backend).inc()

    def record_fallback(self, from_backend: str, to_backend: str, reason: str):
        self.fallbacks_total.labels(
            from_backend=from_backend,
            to_backend=to_backend,
            reason=reason,
        ).inc()

    def record_routing_decision(self, tier: str, selected_backend: str, degraded: bool):
        self.routing_decisions.labels(
            tier=tier,
            selected_backend=selected_backend,
            degraded="true" if degraded else "false",
        ).inc()


class ActiveRequestTracker:
    """Context manager for tracking active requests."""

    def __init__(self, collector: MetricsCollector, endpoint: str):
        self.collector = collector
        self.endpoint = endpoint

    def __enter__(self):
        self.collector.active_requests.labels(endpoint=self.endpoint).inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.active_requests.labels(endpoint=self.endpoint).dec()


_metrics_instance: Optional[MetricsCollector] = None

# Collectors can be registered on the global REGISTRY only once per process
_default_collector: Optional[MetricsCollector] = None


def _get_default_collector() -> MetricsCollector:
    global _default_collector
    if _default_collector is None:
        _default_collector = MetricsCollector(REGISTRY)
    return _default_collector


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times with the same registry: returns the existing
    instance instead of registering the collectors twice.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    if registry is REGISTRY:
        _metrics_instance = _get_default_collector()
    else:
        _metrics_instance = MetricsCollector(registry)
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the metrics collector, creating the default one on first use."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = _get_default_collector()
    return _metrics_instance


def reset_metrics():
    """Forget the current collector (for testing)."""
    global _metrics_instance
    _metrics_instance = None


def metrics_endpoint() -> Response:
    """
    Generate Prometheus metrics endpoint response.

    Usage:
        @app.get("/metrics")
        async def metrics():
            return metrics_endpoint()
    """
    content = generate_latest(get_metrics().registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
