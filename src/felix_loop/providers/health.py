"""Per-provider health tracking: process probes plus a rolling call window."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace

from felix_loop.config import HealthSettings
from felix_loop.models import ProviderHealth
from felix_loop.routing.catalog import DEFAULT_CATALOG, ModelCatalog

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CliCheck:
    """Outcome of probing a provider executable."""

    available: bool
    version: str | None = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class _CallResult:
    success: bool
    latency_ms: int


def check_cli_availability(executable: str, *, timeout_seconds: float = 10.0) -> CliCheck:
    """Process and capability check: executable on PATH and answering ``--version`` in time."""

    resolved = shutil.which(executable)
    if resolved is None:
        return CliCheck(available=False, error=f"Executable not found in PATH: {executable}")
    try:
        completed = subprocess.run(  # noqa: S603
            [resolved, "--version"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return CliCheck(available=False, error="Probe timed out.")
    except OSError as error:
        return CliCheck(available=False, error=f"Probe failed to start: {error}")
    if completed.returncode != 0:
        return CliCheck(
            available=False,
            error=f"Probe exited with code {completed.returncode}",
        )
    version = completed.stdout.strip().splitlines()
    return CliCheck(available=True, version=version[0] if version else None)


CliChecker = Callable[[str], CliCheck]


class HealthMonitor:
    """Owns every ``ProviderHealth`` record. Safe to call from concurrent tasks."""

    def __init__(
        self,
        settings: HealthSettings | None = None,
        *,
        catalog: ModelCatalog = DEFAULT_CATALOG,
        checker: CliChecker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or HealthSettings()
        self.catalog = catalog
        self._checker = checker or (
            lambda executable: check_cli_availability(
                executable,
                timeout_seconds=self.settings.probe_timeout_seconds,
            )
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._state: dict[str, ProviderHealth] = {}
        self._calls: dict[str, deque[_CallResult]] = {}

    def check_health(self, provider: str, *, force: bool = False) -> ProviderHealth:
        """Return the cached verdict, re-probing the executable once the TTL expires."""

        with self._lock:
            existing = self._state.get(provider)
            if existing is not None and not force and self._is_fresh(existing):
                return replace(existing)

        spec = self.catalog.get_provider(provider)
        if spec is None or not spec.cli_executable:
            probe = CliCheck(available=False, error="No CLI executable configured")
        else:
            probe = self._checker(spec.cli_executable)

        with self._lock:
            existing = self._state.get(provider)
            health = ProviderHealth(
                provider=provider,
                available=probe.available,
                last_check=self._clock(),
                consecutive_failures=existing.consecutive_failures if existing else 0,
                error_rate=self._error_rate(provider),
                success_count=existing.success_count if existing else 0,
                failure_count=existing.failure_count if existing else 0,
                last_error=existing.last_error if existing else None,
                latency_ms=self._average_latency(provider),
                version=probe.version,
            )
            if probe.available:
                health.consecutive_failures = 0
            else:
                health.consecutive_failures += 1
                health.failure_count += 1
                health.last_error = probe.error or "CLI not available"
            health.available = probe.available and self._evaluate(health)
            self._state[provider] = health
            if not health.available:
                logger.warning("Provider %s unhealthy: %s", provider, health.last_error)
            return replace(health)

    def is_healthy(self, provider: str, *, force: bool = False) -> bool:
        return self.check_health(provider, force=force).available

    def get_health(self, provider: str) -> ProviderHealth | None:
        with self._lock:
            health = self._state.get(provider)
            return replace(health) if health is not None else None

    def healthy_providers(self) -> list[str]:
        return [
            spec.name
            for spec in self.catalog.providers
            if spec.cli_executable and self.is_healthy(spec.name)
        ]

    def record_success(self, provider: str, latency_ms: int = 0) -> None:
        with self._lock:
            self._record_call(provider, _CallResult(success=True, latency_ms=latency_ms))
            health = self._state.get(provider)
            if health is None:
                return
            health.consecutive_failures = 0
            health.success_count += 1
            health.error_rate = self._error_rate(provider)
            average = self._average_latency(provider)
            if average is not None:
                health.latency_ms = average
            health.available = self._evaluate(health)

    def record_failure(self, provider: str, error: str) -> None:
        with self._lock:
            self._record_call(provider, _CallResult(success=False, latency_ms=0))
            health = self._state.get(provider)
            if health is None:
                self._state[provider] = ProviderHealth(
                    provider=provider,
                    available=False,
                    last_check=self._clock(),
                    consecutive_failures=1,
                    error_rate=1.0,
                    failure_count=1,
                    last_error=error,
                )
                return
            health.consecutive_failures += 1
            health.failure_count += 1
            health.error_rate = self._error_rate(provider)
            health.last_error = error
            was_available = health.available
            health.available = self._evaluate(health)
            if was_available and not health.available:
                logger.warning(
                    "Provider %s marked unhealthy after %d consecutive failure(s): %s",
                    provider,
                    health.consecutive_failures,
                    error,
                )

    def reset(self, provider: str) -> None:
        with self._lock:
            self._state.pop(provider, None)
            self._calls.pop(provider, None)

    def reset_all(self) -> None:
        with self._lock:
            self._state.clear()
            self._calls.clear()

    def _evaluate(self, health: ProviderHealth) -> bool:
        if health.consecutive_failures >= self.settings.max_consecutive_failures:
            return False
        return health.error_rate <= self.settings.max_error_rate

    def _is_fresh(self, health: ProviderHealth) -> bool:
        return self._clock() - health.last_check < self.settings.cache_ttl_seconds

    def _record_call(self, provider: str, result: _CallResult) -> None:
        window = self._calls.get(provider)
        if window is None:
            window = deque(maxlen=self.settings.error_rate_window)
            self._calls[provider] = window
        window.append(result)

    def _error_rate(self, provider: str) -> float:
        window = self._calls.get(provider)
        if not window:
            return 0.0
        return sum(1 for call in window if not call.success) / len(window)

    def _average_latency(self, provider: str) -> int | None:
        window = self._calls.get(provider)
        if not window:
            return None
        latencies = [call.latency_ms for call in window if call.success]
        if not latencies:
            return None
        return round(sum(latencies) / len(latencies))
