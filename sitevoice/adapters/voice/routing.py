"""
SiteVoice Stage Adapters

One adapter per stage (transcription, intent, synthesis). Each holds a remote
provider and an optional local fallback and picks between them with
select_route():

    network up and budget granted   -> remote
    network down                    -> local
    budget denied                   -> local, or RateLimited without one
    remote unreachable mid-call     -> local, or the error without one
    remote quota exceeded (429)     -> local, or the error without one

Every provider call is reported to the rate limiter's quota tracker and to
the quality monitor. Only remote calls consume budget.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from sitevoice.adapters.voice.nlu import merge_active_entities
from sitevoice.core.entities import CommandContext, Intent, SynthesizedAudio, Transcript
from sitevoice.core.errors import (
    NoProviderAvailable,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderUnreachable,
    RateLimited,
)
from sitevoice.core.ports import ConnectivityPort
from sitevoice.core.rate_limiter import LimitScope, RateLimitDecision, RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Route(Enum):
    REMOTE = "remote"
    LOCAL = "local"


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    reason: str
    budget: Optional[RateLimitDecision] = None


@dataclass(frozen=True)
class AdapterResult(Generic[T]):
    """
    Result of one stage call.

    Attributes:
        value: Transcript, Intent or SynthesizedAudio
        confidence: Confidence reported for the value
        provider: Name of the provider that produced it
        route: Remote or local
        latency_ms: Wall time of the provider call
    """
    value: T
    confidence: float
    provider: str
    route: Route
    latency_ms: float


def select_route(
    has_remote: bool,
    has_local: bool,
    network_available: bool,
    consume_budget: Callable[[], RateLimitDecision],
) -> RouteDecision:
    """
    Provider selection policy.

    `consume_budget` is only called when the remote provider would actually
    be used, so a local call never spends remote budget.

    Raises:
        RateLimited: Budget denied and no local fallback
        NoProviderAvailable: Neither provider can serve the call
    """
    if has_remote and network_available:
        budget = consume_budget()
        if budget.allowed:
            return RouteDecision(Route.REMOTE, "remote available", budget)
        if has_local:
            return RouteDecision(Route.LOCAL, "remote budget exhausted", budget)
        raise RateLimited(
            f"Provider budget exhausted, retry after {budget.retry_after:.1f}s",
            retry_after=budget.retry_after,
            scope=budget.scope.value if budget.scope != LimitScope.NONE else LimitScope.PROVIDER.value,
        )
    if has_local:
        reason = "network unavailable" if has_remote else "no remote provider"
        return RouteDecision(Route.LOCAL, reason)
    raise NoProviderAvailable("Network unavailable and no local fallback configured")


class StageAdapter(Generic[T]):
    """
    Base class of the stage adapters.

    Subclasses set `service` and implement `_call_provider` and `_confidence`.
    """

    service: str = ""

    def __init__(
        self,
        remote: Any = None,
        local: Any = None,
        rate_limiter: Optional[RateLimiter] = None,
        connectivity: Optional[ConnectivityPort] = None,
        monitor: Any = None,
    ) -> None:
        if remote is None and local is None:
            raise ValueError(f"{type(self).__name__} needs a remote provider or a local fallback")
        self.remote = remote
        self.local = local
        self.rate_limiter = rate_limiter
        self.connectivity = connectivity
        self.monitor = monitor

    def _network_available(self) -> bool:
        if self.connectivity is None:
            return True
        try:
            return bool(self.connectivity.is_network_available())
        except Exception as e:
            logger.warning(f"Connectivity check failed, assuming offline: {e}")
            return False

    async def call(self, payload: Any, language: str, context: CommandContext) -> AdapterResult[T]:
        """
        Run the stage once against the selected provider.

        Raises:
            ProviderError: On provider failure (after falling back if possible)
            RateLimited: Remote budget denied without a local fallback
        """
        def consume() -> RateLimitDecision:
            if self.rate_limiter is None:
                return RateLimitDecision.allow()
            return self.rate_limiter.try_consume(context.tenant_id, self.remote.name, self.service)

        decision = select_route(
            has_remote=self.remote is not None,
            has_local=self.local is not None,
            network_available=self._network_available(),
            consume_budget=consume,
        )

        if decision.route == Route.REMOTE:
            try:
                return await self._invoke(self.remote, Route.REMOTE, payload, language, context)
            except (ProviderUnreachable, ProviderQuotaExceeded) as e:
                if self.local is None:
                    raise
                logger.warning(f"{self.service}: {e}; switching to local fallback {self.local.name}")

        logger.debug(f"{self.service}: using {self.local.name} ({decision.reason})")
        return await self._invoke(self.local, Route.LOCAL, payload, language, context)

    async def _invoke(
        self,
        provider: Any,
        route: Route,
        payload: Any,
        language: str,
        context: CommandContext,
    ) -> AdapterResult[T]:
        start = time.perf_counter()
        try:
            value = await self._call_provider(provider, payload, language, context)
        except asyncio.CancelledError:
            self._report(provider, context, start, success=False)
            raise
        except ProviderError:
            self._report(provider, context, start, success=False)
            raise
        except Exception as e:
            self._report(provider, context, start, success=False)
            raise ProviderError(f"{provider.name} failed: {e}", provider.name) from e

        latency_ms = self._report(provider, context, start, success=True)
        return AdapterResult(
            value=value,
            confidence=self._confidence(value),
            provider=provider.name,
            route=route,
            latency_ms=latency_ms,
        )

    def _report(self, provider: Any, context: CommandContext, start: float, success: bool) -> float:
        latency_ms = (time.perf_counter() - start) * 1000
        remote = bool(getattr(provider, "is_remote", False))
        if self.rate_limiter is not None:
            self.rate_limiter.record_call(
                context.tenant_id, provider.name, self.service, latency_ms, success, remote=remote
            )
        if self.monitor is not None:
            self.monitor.record_provider_call(
                provider.name, self.service, latency_ms, success, remote=remote
            )
        return latency_ms

    async def _call_provider(self, provider: Any, payload: Any, language: str, context: CommandContext) -> T:
        raise NotImplementedError

    def _confidence(self, value: T) -> float:
        return 1.0

    async def close(self) -> None:
        for provider in (self.remote, self.local):
            close = getattr(provider, "close", None)
            if close is not None:
                await close()


class TranscriptionAdapter(StageAdapter[Transcript]):
    """Audio bytes -> Transcript."""

    service = "transcription"

    async def _call_provider(
        self, provider: Any, payload: bytes, language: str, context: CommandContext
    ) -> Transcript:
        return await provider.transcribe(payload, language)

    def _confidence(self, value: Transcript) -> float:
        return value.confidence


class IntentAdapter(StageAdapter[Intent]):
    """Transcript text -> Intent, with active-entity hints merged in."""

    service = "intent"

    async def _call_provider(
        self, provider: Any, payload: str, language: str, context: CommandContext
    ) -> Intent:
        intent = await provider.parse(payload, context)
        return merge_active_entities(intent, context)

    def _confidence(self, value: Intent) -> float:
        return value.confidence


class SynthesisAdapter(StageAdapter[SynthesizedAudio]):
    """Confirmation text -> SynthesizedAudio."""

    service = "synthesis"

    async def _call_provider(
        self, provider: Any, payload: str, language: str, context: CommandContext
    ) -> SynthesizedAudio:
        return await provider.synthesize(payload, language)
