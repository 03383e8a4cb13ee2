"""
SiteVoice Rate Limiter & Quota Tracker

Sliding-window budgets per (tenant, provider, service) plus a per-tenant daily
ceiling on voice commands.

Every budget check prunes the window, compares against the cap and records
the call under a single lock, so concurrent runs (threads or asyncio tasks)
can never push a window past its cap. When any window denies, nothing is
recorded in any window.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0

# Pseudo provider/service used for the tenant command ceiling
TENANT_SCOPE = "_tenant"


class LimitScope(Enum):
    """Which budget produced a denial."""
    NONE = "none"
    PROVIDER = "provider"
    TENANT = "tenant"


@dataclass(frozen=True)
class WindowCap:
    window_seconds: float
    max_requests: int


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Caps applied by the limiter.

    Attributes:
        requests_per_minute: Default 60 s cap per (tenant, provider, service)
        requests_per_day: Default 86 400 s cap per (tenant, provider, service)
        tenant_daily_commands: Voice commands a tenant may start per day
        overrides: (provider, service) -> (per_minute, per_day)
    """
    requests_per_minute: int = 30
    requests_per_day: int = 2000
    tenant_daily_commands: int = 5000
    overrides: Mapping[Tuple[str, str], Tuple[int, int]] = field(default_factory=dict)

    def windows_for(self, provider: str, service: str) -> Tuple[WindowCap, ...]:
        per_minute, per_day = self.overrides.get(
            (provider, service),
            (self.requests_per_minute, self.requests_per_day),
        )
        return (
            WindowCap(MINUTE_SECONDS, per_minute),
            WindowCap(DAY_SECONDS, per_day),
        )

    @classmethod
    def from_config(cls, config: Any) -> "RateLimitPolicy":
        """Build from a PipelineConfig."""
        return cls(
            requests_per_minute=config.requests_per_minute,
            requests_per_day=config.requests_per_day,
            tenant_daily_commands=config.tenant_daily_commands,
        )


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Result of a budget check.

    Attributes:
        allowed: Whether the call may proceed (and was recorded)
        retry_after: Seconds until the blocking window frees a slot
        scope: Provider window or tenant ceiling
        window_seconds: Length of the window that denied
    """
    allowed: bool
    retry_after: float = 0.0
    scope: LimitScope = LimitScope.NONE
    window_seconds: Optional[float] = None

    @staticmethod
    def allow() -> "RateLimitDecision":
        return RateLimitDecision(allowed=True)

    @staticmethod
    def deny(retry_after: float, scope: LimitScope, window_seconds: float) -> "RateLimitDecision":
        return RateLimitDecision(
            allowed=False,
            retry_after=max(0.0, retry_after),
            scope=scope,
            window_seconds=window_seconds,
        )


@dataclass
class ProviderUsage:
    """Quota tracker counters for one (provider, service)."""
    remote_calls: int = 0
    local_calls: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0

    @property
    def calls(self) -> int:
        return self.remote_calls + self.local_calls

    @property
    def mean_latency_ms(self) -> float:
        return self.total_latency_ms / self.calls if self.calls else 0.0


BudgetKey = Tuple[str, str, str, float]


class RateLimiter:
    """
    Sliding-window rate limiter shared by every run of a pipeline.

    Example:
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=30))
        decision = limiter.try_consume("acme", "remote-asr", "transcription")
        if not decision.allowed:
            # use the local fallback or wait decision.retry_after seconds
            ...
    """

    def __init__(
        self,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or RateLimitPolicy()
        self._clock = clock
        self._windows: Dict[BudgetKey, Deque[float]] = {}
        self._usage: Dict[str, Dict[Tuple[str, str], ProviderUsage]] = defaultdict(dict)
        self._lock = threading.Lock()

    def try_consume(self, tenant_id: str, provider: str, service: str) -> RateLimitDecision:
        """Consume one remote call from the provider budget, if both windows allow it."""
        caps = self.policy.windows_for(provider, service)
        decision = self._try_record(tenant_id, provider, service, caps, LimitScope.PROVIDER)
        if not decision.allowed:
            logger.info(
                f"Rate limit: {tenant_id}/{provider}/{service} denied "
                f"(window {decision.window_seconds:.0f}s, retry after {decision.retry_after:.1f}s)"
            )
        return decision

    def try_admit(self, tenant_id: str) -> RateLimitDecision:
        """Admit one voice command against the tenant daily ceiling."""
        caps = (WindowCap(DAY_SECONDS, self.policy.tenant_daily_commands),)
        decision = self._try_record(tenant_id, TENANT_SCOPE, TENANT_SCOPE, caps, LimitScope.TENANT)
        if not decision.allowed:
            logger.warning(
                f"Tenant {tenant_id} reached its daily command ceiling "
                f"({self.policy.tenant_daily_commands}), retry after {decision.retry_after:.0f}s"
            )
        return decision

    def _try_record(
        self,
        tenant_id: str,
        provider: str,
        service: str,
        caps: Tuple[WindowCap, ...],
        scope: LimitScope,
    ) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            windows: List[Tuple[WindowCap, Deque[float]]] = []

            for cap in caps:
                key = (tenant_id, provider, service, cap.window_seconds)
                window = self._windows.get(key)
                if window is None:
                    window = deque()
                    self._windows[key] = window
                self._prune(window, now, cap.window_seconds)

                if len(window) >= cap.max_requests:
                    if window:
                        retry_after = window[0] + cap.window_seconds - now
                    else:
                        retry_after = cap.window_seconds
                    return RateLimitDecision.deny(retry_after, scope, cap.window_seconds)
                windows.append((cap, window))

            for _, window in windows:
                window.append(now)
            return RateLimitDecision.allow()

    @staticmethod
    def _prune(window: Deque[float], now: float, window_seconds: float) -> None:
        cutoff = now - window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def record_call(
        self,
        tenant_id: str,
        provider: str,
        service: str,
        latency_ms: float,
        success: bool,
        remote: bool = True,
    ) -> None:
        """Quota tracker: records the latency and outcome of a provider call."""
        with self._lock:
            usage = self._usage[tenant_id].setdefault((provider, service), ProviderUsage())
            if remote:
                usage.remote_calls += 1
            else:
                usage.local_calls += 1
            if not success:
                usage.failures += 1
            usage.total_latency_ms += latency_ms

    def remaining(self, tenant_id: str, provider: str, service: str) -> Dict[float, int]:
        """Free slots per window length for a (tenant, provider, service)."""
        with self._lock:
            now = self._clock()
            result: Dict[float, int] = {}
            for cap in self.policy.windows_for(provider, service):
                window = self._windows.get((tenant_id, provider, service, cap.window_seconds))
                if window is None:
                    result[cap.window_seconds] = cap.max_requests
                    continue
                self._prune(window, now, cap.window_seconds)
                result[cap.window_seconds] = max(0, cap.max_requests - len(window))
            return result

    def usage(self, tenant_id: str) -> Dict[str, Any]:
        """Snapshot of the tenant's consumed budgets and call statistics."""
        with self._lock:
            now = self._clock()
            budgets: Dict[str, int] = {}
            for (tenant, provider, service, window_seconds), window in list(self._windows.items()):
                if tenant != tenant_id:
                    continue
                self._prune(window, now, window_seconds)
                budgets[f"{provider}/{service}/{int(window_seconds)}s"] = len(window)

            calls = {
                f"{provider}/{service}": {
                    "remote_calls": usage.remote_calls,
                    "local_calls": usage.local_calls,
                    "failures": usage.failures,
                    "mean_latency_ms": usage.mean_latency_ms,
                }
                for (provider, service), usage in self._usage.get(tenant_id, {}).items()
            }
            return {"tenant_id": tenant_id, "budgets": budgets, "calls": calls}

    def reset(self, tenant_id: Optional[str] = None) -> None:
        """Drops budgets and counters for one tenant, or for all of them."""
        with self._lock:
            if tenant_id is None:
                self._windows.clear()
                self._usage.clear()
                return
            for key in [k for k in self._windows if k[0] == tenant_id]:
                del self._windows[key]
            self._usage.pop(tenant_id, None)

    def expire(self) -> int:
        """Removes windows that no longer hold any timestamp. Returns the count removed."""
        with self._lock:
            now = self._clock()
            empty = []
            for key, window in self._windows.items():
                self._prune(window, now, key[3])
                if not window:
                    empty.append(key)
            for key in empty:
                del self._windows[key]
            return len(empty)
