"""Provider health router: adaptive circuit breaking and weighted routing.

Every known provider carries a :class:`~iceberg_search.models.ProviderStatus`.
Call outcomes move it through four informal states:

* **healthy**: ``weight == 1`` and no outstanding failures.
* **degrading**: each ordinary failure bumps ``failure_count`` and blends the
  weight 70/30 towards ``(1 - failure_ratio) * response_time_factor``.
* **deprecated**: a rate limit, or ``FAILURE_THRESHOLD`` outstanding failures,
  forces ``weight = 0`` and removes the provider from routing.
* **probation**: once the adaptive cooldown has elapsed the provider is routed
  again at ``PROBATION_WEIGHT`` and earns full trust back through successes.

All mutation happens synchronously between event-loop suspension points, so
the table needs no lock while it is only touched from one loop. Callers that
share a router across threads must serialise access themselves.
"""

from __future__ import annotations

import time
from typing import Callable, Iterable, Mapping

import structlog

from iceberg_search.models import (
    HealthCheckStatus,
    ProviderName,
    ProviderSnapshot,
    ProviderStatus,
    SnapshotStatus,
)

logger = structlog.get_logger(__name__)

FAILURE_THRESHOLD = 3

BASE_COOLDOWN_SECONDS = 5 * 60.0
RATE_LIMIT_COOLDOWN_SECONDS = 60 * 60.0
MIN_COOLDOWN_SECONDS = 60.0
MAX_COOLDOWN_SECONDS = 24 * 60 * 60.0
MAX_COOLDOWN_MULTIPLIER = 64.0

ACCEPTABLE_RESPONSE_TIME_MS = 3000.0

MIN_WEIGHT = 0.1
PROBATION_WEIGHT = 0.3
SUCCESS_WEIGHT_STEP = 0.1
FULL_TRUST_WEIGHT = 0.9
DAMPENING = 0.7


def response_time_factor(avg_response_time_ms: float | None) -> float:
    """Linear penalty for average latency above the acceptable threshold.

    Returns 1.0 at or below ``ACCEPTABLE_RESPONSE_TIME_MS`` and falls by the
    overshoot fraction, floored at 0.5.
    """
    if avg_response_time_ms is None or avg_response_time_ms <= ACCEPTABLE_RESPONSE_TIME_MS:
        return 1.0
    overshoot = (avg_response_time_ms - ACCEPTABLE_RESPONSE_TIME_MS) / ACCEPTABLE_RESPONSE_TIME_MS
    return max(0.5, 1.0 - overshoot)


def _snapshot_status(status: ProviderStatus) -> SnapshotStatus:
    if status.is_deprecated:
        return "deprecated"
    mapping: dict[HealthCheckStatus, SnapshotStatus] = {
        "passing": "healthy",
        "unknown": "healthy",
        "warning": "degraded",
        "failing": "failing",
    }
    return mapping[status.health_check_status]


class ProviderHealthRouter:
    """Tracks provider health and decides which providers are worth calling.

    Args:
        providers: Provider names to track; defaults to every :class:`ProviderName`.
        clock:     Wall-clock source in seconds, injectable for tests.
    """

    def __init__(
        self,
        providers: Iterable[ProviderName] = tuple(ProviderName),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._statuses: dict[ProviderName, ProviderStatus] = {
            provider: ProviderStatus() for provider in providers
        }

    @property
    def providers(self) -> list[ProviderName]:
        return list(self._statuses)

    def status(self, provider: ProviderName) -> ProviderStatus:
        """Live status object for *provider* (recovery is checked first)."""
        self.check_recovery(provider)
        return self._statuses[provider]

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def record_failure(
        self,
        provider: ProviderName,
        error: BaseException | None = None,
        is_rate_limit: bool = False,
        response_time_ms: float | None = None,
    ) -> None:
        """Count a failed call and demote *provider* accordingly.

        Rate limits deprecate immediately; ordinary failures reblend the weight
        and deprecate once ``FAILURE_THRESHOLD`` failures are outstanding.
        An elapsed cooldown is settled first, so a failure on the first call
        after it counts against the probation.
        """
        self.check_recovery(provider)
        status = self._statuses[provider]
        status.failure_count += 1
        status.last_failure_time = self._clock()
        status.last_error_message = str(error) if error is not None else "Unknown error"
        if response_time_ms:
            status.response_times.append(response_time_ms)

        if is_rate_limit:
            self._deprecate(provider, status, reason="rate_limit")
            status.rate_limited = True
            return

        if status.failure_count >= FAILURE_THRESHOLD:
            self._deprecate(provider, status, reason="failure_threshold")
            return

        self._reweigh(provider, status)
        self._update_health(status)

    def record_timeout(self, provider: ProviderName, timeout_seconds: float) -> None:
        """Note a timed-out call: degrade *provider* without counting a failure."""
        self.check_recovery(provider)
        status = self._statuses[provider]
        status.last_error_message = f"Timed out after {timeout_seconds:g}s"
        status.response_times.append(timeout_seconds * 1000.0)
        if status.is_deprecated:
            return
        self._reweigh(provider, status)
        status.health_check_status = "warning"
        logger.info("router.provider_timeout", provider=provider.value, weight=round(status.weight, 3))

    def record_success(self, provider: ProviderName, response_time_ms: float | None = None) -> None:
        """Count a successful call and restore trust gradually."""
        self.check_recovery(provider)
        status = self._statuses[provider]
        status.success_count += 1
        if response_time_ms:
            status.response_times.append(response_time_ms)

        if status.is_deprecated:
            # Only reachable when a deprecated provider was called explicitly.
            self._start_probation(provider, status, weight=0.5)
        elif status.failure_count > 0:
            status.failure_count -= 1
            self._reweigh(provider, status)
            logger.info("router.weight_restored", provider=provider.value, weight=round(status.weight, 3))
        elif status.weight < 1.0:
            status.weight = min(1.0, round(status.weight + SUCCESS_WEIGHT_STEP, 6))

        if status.on_probation and status.failure_count == 0 and status.weight >= FULL_TRUST_WEIGHT:
            status.on_probation = False
            status.cooldown_multiplier = 1.0
            logger.info("router.probation_cleared", provider=provider.value)

        self._update_health(status)

    def apply_health_check(self, provider: ProviderName, healthy: bool) -> None:
        """Fold the result of an active health check into *provider*'s state.

        A passing check returns an ordinarily-deprecated provider on probation;
        rate-limited providers always sit out their full cooldown.
        """
        status = self._statuses[provider]
        if healthy:
            if status.is_deprecated and not status.rate_limited:
                self._start_probation(provider, status, weight=PROBATION_WEIGHT)
            elif not status.is_deprecated:
                status.health_check_status = "passing"
        elif not status.is_deprecated:
            status.health_check_status = "warning"

    def reset(self, provider: ProviderName, weight: float = 1.0) -> None:
        """Forget *provider*'s failure history and set its weight."""
        status = self._statuses[provider]
        status.failure_count = 0
        status.last_failure_time = None
        status.weight = weight
        status.is_deprecated = False
        status.rate_limited = False
        status.on_probation = False
        status.health_check_status = "unknown"
        status.cooldown_multiplier = 1.0
        logger.info("router.provider_reset", provider=provider.value, weight=weight)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def cooldown_seconds(self, provider: ProviderName) -> float:
        """Adaptive cooldown for *provider*, clamped to [1 minute, 24 hours]."""
        status = self._statuses[provider]
        base = RATE_LIMIT_COOLDOWN_SECONDS if status.rate_limited else BASE_COOLDOWN_SECONDS
        cooldown = base * status.cooldown_multiplier
        return min(MAX_COOLDOWN_SECONDS, max(MIN_COOLDOWN_SECONDS, cooldown))

    def check_recovery(self, provider: ProviderName) -> bool:
        """Move *provider* onto probation if its cooldown has elapsed.

        Returns:
            ``True`` when the provider was rehabilitated by this call.
        """
        status = self._statuses[provider]
        if not status.is_deprecated or status.last_failure_time is None:
            return False

        elapsed = self._clock() - status.last_failure_time
        cooldown = self.cooldown_seconds(provider)
        if elapsed <= cooldown:
            return False

        logger.info("router.cooldown_elapsed", provider=provider.value, cooldown_s=cooldown)
        self._start_probation(provider, status, weight=PROBATION_WEIGHT)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_available_providers(
        self,
        include_deprecated: bool = False,
        min_weight: float = 0.0,
        candidates: Iterable[ProviderName] | None = None,
    ) -> list[ProviderName]:
        """Providers worth routing to, best first.

        Args:
            include_deprecated: Keep deprecated providers in the result.
            min_weight:         Inclusive lower bound on weight.
            candidates:         Restrict the answer to these providers.

        Returns:
            Provider names sorted by weight descending; ties keep declaration order.
        """
        pool = list(self._statuses) if candidates is None else [p for p in candidates if p in self._statuses]
        available: list[ProviderName] = []
        for provider in pool:
            self.check_recovery(provider)
            status = self._statuses[provider]
            if (include_deprecated or not status.is_deprecated) and status.weight >= min_weight:
                available.append(provider)
        return sorted(available, key=lambda p: self._statuses[p].weight, reverse=True)

    def health_check_candidates(self) -> list[ProviderName]:
        """Providers an active health check could tell us something new about.

        Passing providers are skipped, as are providers never called yet
        (``unknown``) and those
        that failed within the last ``MIN_COOLDOWN_SECONDS``.
        """
        now = self._clock()
        candidates: list[ProviderName] = []
        for provider, status in self._statuses.items():
            if status.health_check_status in ("passing", "unknown") and not status.is_deprecated:
                continue
            if status.last_failure_time is not None and now - status.last_failure_time < MIN_COOLDOWN_SECONDS:
                continue
            candidates.append(provider)
        return candidates

    def is_deprecated(self, provider: ProviderName) -> bool:
        self.check_recovery(provider)
        return self._statuses[provider].is_deprecated

    def weight(self, provider: ProviderName) -> float:
        self.check_recovery(provider)
        return self._statuses[provider].weight

    def weights(self) -> Mapping[str, float]:
        """Current weight per provider name, as plain strings."""
        return {provider.value: self.weight(provider) for provider in self._statuses}

    def snapshot(self) -> dict[str, ProviderSnapshot]:
        """Observability summary for every tracked provider."""
        result: dict[str, ProviderSnapshot] = {}
        for provider in self._statuses:
            self.check_recovery(provider)
            status = self._statuses[provider]
            total = status.success_count + status.failure_count
            result[provider.value] = ProviderSnapshot(
                success_rate=status.success_count / total if total else 1.0,
                avg_response_time=status.average_response_time,
                status=_snapshot_status(status),
                weight=status.weight,
                failure_count=status.failure_count,
                success_count=status.success_count,
                last_failure_time=status.last_failure_time,
                last_error_message=status.last_error_message,
            )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reweigh(self, provider: ProviderName, status: ProviderStatus) -> None:
        attempts = status.failure_count + status.success_count
        failure_ratio = status.failure_count / attempts if attempts else 0.0
        fresh = max(MIN_WEIGHT, (1.0 - failure_ratio) * response_time_factor(status.average_response_time))
        blended = status.weight * DAMPENING + fresh * (1.0 - DAMPENING)
        status.weight = min(1.0, max(MIN_WEIGHT, blended))
        logger.debug("router.weight_updated", provider=provider.value, weight=round(status.weight, 3))

    def _deprecate(self, provider: ProviderName, status: ProviderStatus, reason: str) -> None:
        if status.on_probation:
            status.cooldown_multiplier = min(MAX_COOLDOWN_MULTIPLIER, status.cooldown_multiplier * 2)
            status.on_probation = False
        status.is_deprecated = True
        status.weight = 0.0
        status.health_check_status = "failing"
        logger.warning(
            "router.provider_deprecated",
            provider=provider.value,
            reason=reason,
            failures=status.failure_count,
            error=status.last_error_message,
        )

    def _start_probation(self, provider: ProviderName, status: ProviderStatus, weight: float) -> None:
        status.failure_count = 0
        status.last_failure_time = None
        status.weight = weight
        status.is_deprecated = False
        status.rate_limited = False
        status.on_probation = True
        status.health_check_status = "warning"
        logger.info("router.provider_on_probation", provider=provider.value, weight=weight)

    @staticmethod
    def _update_health(status: ProviderStatus) -> None:
        if status.is_deprecated:
            status.health_check_status = "failing"
        elif status.failure_count >= FAILURE_THRESHOLD - 1:
            status.health_check_status = "failing"
        elif status.failure_count > 0:
            status.health_check_status = "warning"
        elif (status.average_response_time or 0.0) > ACCEPTABLE_RESPONSE_TIME_MS:
            status.health_check_status = "warning"
        else:
            status.health_check_status = "passing"
