"""
llmrelay - Health Monitoring

Rolling health per backend:
- Error rate over a short and a long window
- Latency percentiles (p50, p95)
- Request quota consumption per minute and per day
- Availability from active probes

Updated passively from every attempt that reached a backend and actively by
a background probe loop. Each backend has its own lock; there is no lock
shared across backends.

Counters live in fixed-size time buckets (one per second for the minute
quota, one per minute for the windows and the daily quota), so the memory
held and the work done by status() do not grow with traffic.
"""

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Dict, Iterable, List, Mapping, Optional, Tuple, TYPE_CHECKING

from ..core.config import HealthConfig
from ..core.models import AttemptOutcome, AttemptTrace, BackendDescriptor
from ..observability.logging import TimedOperation, get_logger
from ..observability.metrics import get_metrics

if TYPE_CHECKING:
    from ..adapters.base import BaseAdapter


logger = get_logger("llmrelay.routing.health")

SECOND = 1.0
MINUTE = 60.0
DAY = 86400.0


@dataclass
class Bucket:
    """Attempts that reached the backend during one fixed interval."""
    start: float
    requests: int = 0
    failures: int = 0
    tokens: int = 0


@dataclass(frozen=True)
class HealthStatus:
    """Read-only view of a backend's health at one instant."""
    name: str
    available: bool
    probe_ok: bool
    error_rate_short: float
    error_rate_long: float
    requests_short: int
    requests_long: int
    latency_p50_ms: float
    latency_p95_ms: float
    quota_used: int
    quota_limit: Optional[int]
    quota_exhausted: bool
    quota_headroom: float
    tokens_short: int = 0
    tokens_long: int = 0
    last_checked: Optional[float] = None
    last_error: Optional[str] = None


def percentile(sorted_data: List[float], p: float) -> float:
    """Linear-interpolated percentile of already sorted data."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * p / 100
    f = int(k)
    c = f + 1 if f + 1 < len(sorted_data) else f
    return sorted_data[f] + (sorted_data[c] - sorted_data[f]) * (k - f)


def _add(buckets: Deque[Bucket], width: float, now: float) -> Bucket:
    """The bucket covering `now`, appended if the newest one is older."""
    start = math.floor(now / width) * width
    if not buckets or buckets[-1].start < start:
        buckets.append(Bucket(start))
    return buckets[-1]


class HealthRecord:
    """
    Health of a single backend.

    Buckets past every window are dropped whenever the record is touched;
    there is no background sweeper. A window covers the buckets that start
    after its cutoff, so samples leave a window up to one bucket early.
    Quota counting keeps a bucket until its end leaves the window.
    """

    def __init__(
        self,
        descriptor: BackendDescriptor,
        config: Optional[HealthConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.descriptor = descriptor
        self.config = config or HealthConfig()
        self._clock = clock
        self._lock = Lock()

        self._seconds: Deque[Bucket] = deque()
        self._minutes: Deque[Bucket] = deque()

        # (timestamp, latency_ms) of the most recent attempts
        self._latencies: Deque[Tuple[float, float]] = deque(maxlen=self.config.latency_samples)
        self._sorted_latencies: Optional[List[float]] = None

        self._probe_ok = True
        self._last_checked: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.descriptor.name

    def record(
        self,
        success: bool,
        latency_ms: float,
        tokens: int = 0,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)

            _add(self._seconds, SECOND, now).requests += 1
            minute = _add(self._minutes, MINUTE, now)
            minute.requests += 1
            minute.tokens += tokens
            if not success:
                minute.failures += 1
                if error:
                    self._last_error = error

            self._latencies.append((now, latency_ms))
            self._sorted_latencies = None

    def record_probe(self, ok: bool, error: Optional[str] = None) -> None:
        with self._lock:
            self._probe_ok = ok
            self._last_checked = self._clock()
            if not ok:
                self._last_error = error or "probe failed"

    def _prune(self, now: float) -> None:
        """Drop buckets and latencies no window needs any more (must hold lock)."""
        while self._seconds and self._seconds[0].start + SECOND <= now - MINUTE:
            self._seconds.popleft()

        long_cutoff = now - self.config.long_window_seconds
        day_cutoff = now - DAY
        while self._minutes and (
            self._minutes[0].start <= long_cutoff and self._minutes[0].start + MINUTE <= day_cutoff
        ):
            self._minutes.popleft()

        short_cutoff = now - self.config.short_window_seconds
        if self._latencies and self._latencies[0][0] <= short_cutoff:
            while self._latencies and self._latencies[0][0] <= short_cutoff:
                self._latencies.popleft()
            self._sorted_latencies = None

    def _window(self, cutoff: float) -> Tuple[int, int, int]:
        """(requests, failures, tokens) of minute buckets after cutoff (must hold lock)."""
        requests = failures = tokens = 0
        for bucket in reversed(self._minutes):
            if bucket.start <= cutoff:
                break
            requests += bucket.requests
            failures += bucket.failures
            tokens += bucket.tokens
        return requests, failures, tokens

    def _quota(self, now: float):
        """(used, limit, exhausted, headroom) for the tightest quota (must hold lock)."""
        per_minute = sum(b.requests for b in self._seconds if b.start + SECOND > now - MINUTE)
        per_day = sum(b.requests for b in self._minutes if b.start + MINUTE > now - DAY)

        limits = []
        if self.descriptor.requests_per_minute:
            limits.append((per_minute, self.descriptor.requests_per_minute))
        if self.descriptor.requests_per_day:
            limits.append((per_day, self.descriptor.requests_per_day))

        if not limits:
            return per_minute, None, False, 1.0

        exhausted = any(used >= limit for used, limit in limits)
        used, limit = max(limits, key=lambda pair: pair[0] / pair[1])
        headroom = max(0.0, 1.0 - used / limit)
        return used, limit, exhausted, headroom

    def _latency_percentiles(self) -> Tuple[float, float]:
        """p50/p95 of the short-window latencies, sorted once per change (must hold lock)."""
        if self._sorted_latencies is None:
            self._sorted_latencies = sorted(latency for _, latency in self._latencies)
        return percentile(self._sorted_latencies, 50), percentile(self._sorted_latencies, 95)

    def status(self) -> HealthStatus:
        with self._lock:
            now = self._clock()
            self._prune(now)

            short_requests, short_failures, short_tokens = self._window(now - self.config.short_window_seconds)
            long_requests, long_failures, long_tokens = self._window(now - self.config.long_window_seconds)
            p50, p95 = self._latency_percentiles()
            used, limit, exhausted, headroom = self._quota(now)

            return HealthStatus(
                name=self.name,
                available=self._probe_ok and not exhausted,
                probe_ok=self._probe_ok,
                error_rate_short=short_failures / short_requests if short_requests else 0.0,
                error_rate_long=long_failures / long_requests if long_requests else 0.0,
                requests_short=short_requests,
                requests_long=long_requests,
                latency_p50_ms=p50,
                latency_p95_ms=p95,
                quota_used=used,
                quota_limit=limit,
                quota_exhausted=exhausted,
                quota_headroom=headroom,
                tokens_short=short_tokens,
                tokens_long=long_tokens,
                last_checked=self._last_checked,
                last_error=self._last_error,
            )


class HealthMonitor:
    """
    Registry of HealthRecords, one per backend.

    Passed by reference to the routing engine (reads) and the fallback
    executor (passive updates).
    """

    def __init__(
        self,
        descriptors: Iterable[BackendDescriptor] = (),
        config: Optional[HealthConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or HealthConfig()
        self._clock = clock
        self._records: Dict[str, HealthRecord] = {}
        self._lock = Lock()
        self._probe_task: Optional[asyncio.Task] = None

        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: BackendDescriptor) -> HealthRecord:
        with self._lock:
            if descriptor.name not in self._records:
                self._records[descriptor.name] = HealthRecord(descriptor, self.config, self._clock)
            return self._records[descriptor.name]

    def get_record(self, name: str) -> HealthRecord:
        with self._lock:
            try:
                return self._records[name]
            except KeyError:
                raise KeyError(f"Unknown backend: {name}") from None

    def record_attempt(self, trace: AttemptTrace, tokens: int = 0) -> None:
        """Passive update from one attempt. Circuit-open rejections are ignored."""
        if not trace.contacted_backend:
            return
        self.get_record(trace.backend).record(
            success=trace.outcome == AttemptOutcome.SUCCESS,
            latency_ms=trace.latency_ms,
            tokens=tokens,
            error=trace.error_message or trace.error_kind,
        )

    def record_probe(self, name: str, ok: bool, error: Optional[str] = None) -> None:
        self.get_record(name).record_probe(ok, error)

    def status(self, name: str) -> HealthStatus:
        return self.get_record(name).status()

    def snapshot(self) -> Dict[str, HealthStatus]:
        with self._lock:
            records = list(self._records.values())
        return {record.name: record.status() for record in records}

    # ============================================================
    # Active probing
    # ============================================================

    async def _probe_one(self, adapter: "BaseAdapter") -> bool:
        start = time.perf_counter()
        error: Optional[str] = None
        try:
            ok = await asyncio.wait_for(adapter.probe(), timeout=self.config.probe_timeout_seconds)
        except asyncio.TimeoutError:
            ok, error = False, "probe timed out"
        except Exception as e:
            ok, error = False, f"{type(e).__name__}: {e}"

        duration = time.perf_counter() - start
        self.record_probe(adapter.name, ok, error)
        get_metrics().record_health_check(adapter.name, ok, duration)

        if not ok:
            logger.warning("Health probe failed", backend=adapter.name, error=error, duration_ms=round(duration * 1000, 2))
        return ok

    async def run_probes_once(self, adapters: Mapping[str, "BaseAdapter"]) -> Dict[str, bool]:
        """Probe every backend concurrently, once."""
        names = list(adapters)
        results = await asyncio.gather(*(self._probe_one(adapters[n]) for n in names))
        return dict(zip(names, results))

    def start_probing(
        self,
        adapters: Mapping[str, "BaseAdapter"],
        interval_seconds: Optional[float] = None,
    ) -> None:
        """Start the background probe loop on the running event loop."""
        if self._probe_task is not None and not self._probe_task.done():
            return

        interval = interval_seconds or self.config.probe_interval_seconds

        async def probe_loop():
            while True:
                try:
                    with TimedOperation("probe_round", logger):
                        await self.run_probes_once(adapters)
                except Exception:
                    logger.exception("Health probe round failed")
                await asyncio.sleep(interval)

        self._probe_task = asyncio.create_task(probe_loop())
        logger.info("Health probing started", interval_seconds=interval, backends=list(adapters))

    async def stop_probing(self) -> None:
        if self._probe_task:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None

    @property
    def probing(self) -> bool:
        return self._probe_task is not None and not self._probe_task.done()
