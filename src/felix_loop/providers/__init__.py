"""Worker backends, provider health and fallback routing."""

from felix_loop.providers.fallback import (
    FallbackAttempt,
    FallbackConfig,
    FallbackExhaustedError,
    FallbackRouter,
    FallbackSelection,
    FallbackTarget,
)
from felix_loop.providers.health import CliCheck, HealthMonitor, check_cli_availability
from felix_loop.providers.registry import WorkerRegistry
from felix_loop.providers.workers import (
    ApiWorker,
    BackendRunError,
    CliWorker,
    DryRunWorker,
    WorkerHandle,
    WorkerRequest,
    WorkerResponse,
)

__all__ = [
    "ApiWorker",
    "BackendRunError",
    "CliCheck",
    "CliWorker",
    "DryRunWorker",
    "FallbackAttempt",
    "FallbackConfig",
    "FallbackExhaustedError",
    "FallbackRouter",
    "FallbackSelection",
    "FallbackTarget",
    "HealthMonitor",
    "WorkerHandle",
    "WorkerRegistry",
    "WorkerRequest",
    "WorkerResponse",
    "check_cli_availability",
]
