"""
llmrelay - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Smoke test handling (skip with SKIP_SMOKE=1)
- Isolated Prometheus registry per test
- Manual clocks and stub backends for unit tests
"""

import os
import pytest
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry

from llmrelay.adapters.stub_adapter import StubAdapter
from llmrelay.core.config import RetryPolicy
from llmrelay.core.models import ALL_TIERS, BackendDescriptor, ComplexityTier
from llmrelay.observability.logging import LogContext
from llmrelay.observability.metrics import reset_metrics, setup_metrics


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))
SKIP_SMOKE = _is_truthy(os.getenv("SKIP_SMOKE"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )
    config.addinivalue_line(
        "markers",
        "smoke: mark test as smoke test (skip with SKIP_SMOKE=1)"
    )


def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to handle integration and smoke tests.

    - Integration tests: Skip unless RUN_INTEGRATION=1
    - Smoke tests: Skip if SKIP_SMOKE=1
    """
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    skip_smoke = pytest.mark.skip(
        reason="Smoke test skipped - SKIP_SMOKE=1"
    )

    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)

        if "smoke" in item.keywords and SKIP_SMOKE:
            item.add_marker(skip_smoke)


# ============================================================
# Isolation
# ============================================================

@pytest.fixture(autouse=True)
def metrics_registry():
    """Fresh Prometheus registry for every test."""
    registry = CollectorRegistry()
    setup_metrics(registry)
    yield registry
    reset_metrics()
    LogContext.clear()


# ============================================================
# Clocks
# ============================================================

class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


# ============================================================
# Backends
# ============================================================

def make_descriptor(
    name: str,
    tiers: Iterable[ComplexityTier] = ALL_TIERS,
    priority: float = 1.0,
    model: Optional[str] = None,
    rpm: Optional[int] = None,
    rpd: Optional[int] = None,
    cost_factor: float = 0.001,
) -> BackendDescriptor:
    return BackendDescriptor(
        name=name,
        kind="stub",
        model=model or f"{name}-model",
        priority_weight=priority,
        supported_tiers=frozenset(tiers),
        requests_per_minute=rpm,
        requests_per_day=rpd,
        cost_factor=cost_factor,
    )


def make_stub(name: str, script=None, latency_seconds: float = 0.0, healthy: bool = True, **descriptor_kwargs) -> StubAdapter:
    return StubAdapter(
        make_descriptor(name, **descriptor_kwargs),
        script=script,
        latency_seconds=latency_seconds,
        healthy=healthy,
    )


def stock_backends(**scripts) -> dict:
    """
    The default three-backend deployment as stubs:
    groq (low, medium), gemini (all tiers), cerebras (medium, high).
    """
    low, medium, high = ComplexityTier.LOW, ComplexityTier.MEDIUM, ComplexityTier.HIGH
    return {
        "groq": make_stub("groq", scripts.get("groq"), tiers={low, medium}, priority=3.0,
                          model="llama-3.1-70b-versatile"),
        "gemini": make_stub("gemini", scripts.get("gemini"), tiers={low, medium, high}, priority=2.0,
                            model="gemini-1.5-flash"),
        "cerebras": make_stub("cerebras", scripts.get("cerebras"), tiers={medium, high}, priority=1.0,
                              model="llama3.1-70b"),
    }


@pytest.fixture
def fast_retry():
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, jitter_factor=0.0, max_delay_seconds=0.0)
