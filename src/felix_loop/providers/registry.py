"""Resolves model names to executable worker handles, with an LRU instance cache."""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path

from felix_loop.config import CommandSettings
from felix_loop.models import Backend
from felix_loop.pricing import PricingTable
from felix_loop.providers.health import CliCheck, CliChecker, check_cli_availability
from felix_loop.providers.workers import (
    ApiWorker,
    BackendRunError,
    CliWorker,
    DryRunWorker,
    WorkerHandle,
)
from felix_loop.routing.catalog import DEFAULT_CATALOG, ModelCatalog, ModelSpec

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 20

WorkerFactory = Callable[[ModelSpec, Backend], WorkerHandle]


class WorkerRegistry:
    """Builds and caches worker handles keyed by ``provider:model:backend:workdir``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        workdir: Path,
        commands: CommandSettings | None = None,
        catalog: ModelCatalog = DEFAULT_CATALOG,
        pricing: PricingTable | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
        cli_checker: CliChecker | None = None,
        dry_run: bool = False,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        self.workdir = workdir
        self.commands = commands or CommandSettings()
        self.catalog = catalog
        self.pricing = pricing or PricingTable(catalog)
        self.cache_size = max(1, cache_size)
        self.dry_run = dry_run
        self._cli_checker = cli_checker or check_cli_availability
        self._worker_factory = worker_factory
        self._cache: OrderedDict[str, WorkerHandle] = OrderedDict()
        self._lock = threading.Lock()

    def resolve(
        self,
        model: str,
        backend: Backend,
        *,
        provider: str | None = None,
    ) -> WorkerHandle:
        """Worker for ``model`` on ``backend``. Raises ``BackendRunError`` when it cannot exist."""

        spec = self.catalog.find_model(model)
        if spec is None:
            raise BackendRunError(f"Unknown model: {model}", transient=False)
        target_provider = provider or spec.provider
        if target_provider != spec.provider or backend not in spec.backends:
            mapped = self.catalog.equivalent_model(
                spec,
                provider=target_provider,
                backend=backend,
            )
            if mapped is None:
                raise BackendRunError(
                    f"Provider {target_provider} has no model for backend {backend.value}",
                    transient=False,
                )
            spec = mapped
        return self.create_for_provider(spec, backend)

    def create_for_provider(self, spec: ModelSpec, backend: Backend) -> WorkerHandle:
        key = f"{spec.provider}:{spec.id}:{backend.value}:{self.workdir}"
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached

        handle = self._build(spec, backend)
        with self._lock:
            self._cache[key] = handle
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("Evicted worker %s from registry cache", evicted)
        return handle

    def is_cli_available(self, model: str) -> bool:
        """Whether the provider executable for ``model`` answers its version probe."""

        provider = self.catalog.detect_provider(model)
        spec = self.catalog.get_provider(provider) if provider else None
        if spec is None or not spec.cli_executable:
            return False
        check: CliCheck = self._cli_checker(spec.cli_executable)
        if not check.available:
            logger.info("CLI %s unavailable: %s", spec.cli_executable, check.error)
        return check.available

    def default_backend(self, model: str) -> Backend:
        spec = self.catalog.find_model(model)
        if spec is not None and Backend.CLI not in spec.backends:
            return Backend.API
        return Backend.CLI

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def cached_keys(self) -> list[str]:
        with self._lock:
            return list(self._cache)

    def _build(self, spec: ModelSpec, backend: Backend) -> WorkerHandle:
        if backend not in spec.backends:
            raise BackendRunError(
                f"Model {spec.id} does not support the {backend.value} backend",
                transient=False,
            )
        if self._worker_factory is not None:
            return self._worker_factory(spec, backend)
        if self.dry_run:
            return DryRunWorker(provider=spec.provider, model=spec.id, backend=backend)
        if backend is Backend.CLI:
            template = self.commands.cli_command_templates.get(spec.provider)
            if not template:
                raise BackendRunError(
                    f"No CLI command template configured for provider {spec.provider}",
                    transient=False,
                )
            return CliWorker(
                provider=spec.provider,
                model=spec.id,
                command_template=template,
                pricing=self.pricing,
            )

        provider = self.catalog.get_provider(spec.provider)
        key_env = provider.api_key_env if provider else ""
        api_key = os.getenv(key_env, "").strip() if key_env else ""
        if not api_key:
            raise BackendRunError(
                f"API key not set for provider {spec.provider} ({key_env})",
                transient=False,
            )
        base_url = self.commands.api_base_urls.get(spec.provider)
        if not base_url:
            raise BackendRunError(
                f"No API base URL configured for provider {spec.provider}",
                transient=False,
            )
        return ApiWorker(
            provider=spec.provider,
            model=spec.id,
            api_model_name=spec.api_model_name,
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=self.commands.api_timeout_seconds,
            pricing=self.pricing,
        )
