"""Ordered provider/backend fallback with health-aware skipping."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from felix_loop.models import Backend
from felix_loop.providers.health import HealthMonitor
from felix_loop.providers.registry import WorkerRegistry
from felix_loop.providers.workers import BackendRunError, WorkerHandle

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
UNHEALTHY_SKIPPED = "Unhealthy (skipped)"


@dataclass(slots=True, frozen=True)
class FallbackTarget:
    provider: str
    backend: Backend

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.backend.value}"


@dataclass(slots=True)
class FallbackConfig:
    """Primary target plus ordered alternatives. Only ``max_retries`` alternatives are tried."""

    primary: FallbackTarget
    fallbacks: list[FallbackTarget] = field(default_factory=list)
    max_retries: int = DEFAULT_MAX_RETRIES

    def candidates(self) -> list[FallbackTarget]:
        ordered = [self.primary, *self.fallbacks[: max(0, self.max_retries)]]
        unique: list[FallbackTarget] = []
        for target in ordered:
            if target not in unique:
                unique.append(target)
        return unique


@dataclass(slots=True, frozen=True)
class FallbackAttempt:
    provider: str
    backend: Backend
    error: str


@dataclass(slots=True)
class FallbackSelection:
    """Worker obtained by the fallback router plus the path taken to get it."""

    handle: WorkerHandle
    provider: str
    backend: Backend
    attempts: list[FallbackAttempt] = field(default_factory=list)
    used_fallback: bool = False


class FallbackExhaustedError(RuntimeError):
    """Every fallback candidate failed. The message lists each attempt."""

    def __init__(self, model: str, attempts: list[FallbackAttempt]) -> None:
        lines = [f'All fallback attempts failed for model "{model}":']
        lines.extend(
            f"  - {attempt.provider}:{attempt.backend.value}: {attempt.error}"
            for attempt in attempts
        )
        super().__init__("\n".join(lines))
        self.model = model
        self.attempts = attempts


class FallbackRouter:
    """Walks ``(provider, backend)`` candidates until a worker can be obtained."""

    def __init__(
        self,
        registry: WorkerRegistry,
        health: HealthMonitor,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.registry = registry
        self.health = health
        self.max_retries = max_retries

    def default_fallback_config(
        self,
        model: str,
        *,
        backend: Backend | None = None,
    ) -> FallbackConfig:
        """Primary, same provider other backend, other provider same backend, then both swapped."""

        catalog = self.registry.catalog
        provider = catalog.detect_provider(model)
        if provider is None:
            raise BackendRunError(f"Cannot detect provider for model: {model}", transient=False)
        primary_backend = backend or self.registry.default_backend(model)
        alternate_backend = Backend.API if primary_backend is Backend.CLI else Backend.CLI
        alternate_provider = next(
            (
                spec.name
                for spec in catalog.providers
                if spec.name != provider
                and any(item.provider == spec.name for item in catalog.enabled_models())
            ),
            None,
        )
        fallbacks = [FallbackTarget(provider, alternate_backend)]
        if alternate_provider is not None:
            fallbacks.append(FallbackTarget(alternate_provider, primary_backend))
            fallbacks.append(FallbackTarget(alternate_provider, alternate_backend))
        return FallbackConfig(
            primary=FallbackTarget(provider, primary_backend),
            fallbacks=fallbacks,
            max_retries=self.max_retries,
        )

    async def get_worker_with_fallback(
        self,
        model: str,
        config: FallbackConfig | None = None,
    ) -> FallbackSelection:
        """First obtainable worker. Raises ``FallbackExhaustedError`` listing every attempt."""

        config = config or self.default_fallback_config(model)
        attempts: list[FallbackAttempt] = []
        for index, target in enumerate(config.candidates()):
            if target.backend is Backend.CLI:
                healthy = await asyncio.to_thread(self.health.is_healthy, target.provider)
                if not healthy:
                    logger.warning(
                        "Skipping %s for model %s: provider unhealthy",
                        target.label,
                        model,
                    )
                    attempts.append(
                        FallbackAttempt(target.provider, target.backend, UNHEALTHY_SKIPPED),
                    )
                    continue
            try:
                handle = self.registry.resolve(model, target.backend, provider=target.provider)
            except BackendRunError as error:
                logger.warning("Fallback candidate %s failed: %s", target.label, error)
                attempts.append(FallbackAttempt(target.provider, target.backend, str(error)))
                if target.backend is Backend.CLI:
                    self.health.record_failure(target.provider, str(error))
                continue

            used_fallback = index > 0
            # Only a recovered fallback counts as a call; attempt outcomes feed the
            # window for the primary.
            if used_fallback and target.backend is Backend.CLI:
                self.health.record_success(target.provider)
            if used_fallback:
                logger.info(
                    "Using fallback %s (%s) for model %s after %d failed candidate(s)",
                    target.label,
                    handle.model,
                    model,
                    len(attempts),
                )
            else:
                logger.debug("Using primary %s for model %s", target.label, model)
            return FallbackSelection(
                handle=handle,
                provider=target.provider,
                backend=target.backend,
                attempts=attempts,
                used_fallback=used_fallback,
            )
        raise FallbackExhaustedError(model, attempts)
