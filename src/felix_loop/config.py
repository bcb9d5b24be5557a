"""Runtime configuration for the task loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

EXECUTION_MODES = ("auto", "sequential", "parallel", "hierarchical")
BACKOFF_STRATEGIES = ("linear", "exponential", "fibonacci")
BACKENDS = ("cli", "api")

DEFAULT_CLI_COMMAND_TEMPLATES = {
    "anthropic": "claude -p --model {model} --output-format json -- {prompt}",
    "google": "gemini --model {model} --approval-mode auto_edit --prompt {prompt}",
}
DEFAULT_API_BASE_URLS = {
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
}


@dataclass(slots=True)
class RunSettings:
    """Per-run limits and execution policy."""

    max_attempts: int = 3
    max_cost_usd: float = 10.0
    max_tasks: int | None = None
    max_parallel_tasks: int = 3
    continue_on_failure: bool = False
    execution_mode: str = "auto"
    enable_parallel_execution: bool = False
    enable_checkpoints: bool = True
    dry_run: bool = False
    default_model: str = "sonnet"
    backend: str = "cli"


@dataclass(slots=True)
class RouterSettings:
    """Model router settings."""

    enable_cascade: bool = True
    max_escalations: int = 3
    enable_history: bool = True
    enable_free_models: bool = False


@dataclass(slots=True)
class HealthSettings:
    """Provider health thresholds."""

    cache_ttl_seconds: float = 60.0
    max_consecutive_failures: int = 3
    max_error_rate: float = 0.5
    error_rate_window: int = 100
    probe_timeout_seconds: float = 10.0


@dataclass(slots=True)
class FallbackSettings:
    max_retries: int = 2
    registry_cache_size: int = 20


@dataclass(slots=True)
class RetrySettings:
    """Backoff policy between attempts of the same task."""

    backoff_strategy: str = "exponential"
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 60.0


@dataclass(slots=True)
class ValidationSettings:
    """Post-task validation, final validation and quality gate commands."""

    post_task_commands: tuple[str, ...] = ()
    final_validation_command: str | None = None
    quality_gate_commands: tuple[str, ...] = ()
    command_timeout_seconds: int = 300
    circuit_breaker_threshold: int = 0
    circuit_breaker_reset_seconds: float = 60.0


@dataclass(slots=True)
class CommandSettings:
    """How workers are launched for each provider."""

    cli_command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CLI_COMMAND_TEMPLATES),
    )
    api_base_urls: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_API_BASE_URLS))
    api_timeout_seconds: float = 600.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".felix_loop.db")
    project_root: Path = Path()
    log_level: str = "WARNING"
    run: RunSettings = field(default_factory=RunSettings)
    router: RouterSettings = field(default_factory=RouterSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    fallback: FallbackSettings = field(default_factory=FallbackSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    commands: CommandSettings = field(default_factory=CommandSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local runs."""

        max_tasks_raw = os.getenv("FELIX_LOOP_MAX_TASKS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("FELIX_LOOP_DB_PATH", ".felix_loop.db")),
            project_root=Path(os.getenv("FELIX_LOOP_PROJECT_ROOT", ".")),
            log_level=os.getenv("FELIX_LOOP_LOG_LEVEL", "WARNING").upper(),
            run=RunSettings(
                max_attempts=int(os.getenv("FELIX_LOOP_MAX_ATTEMPTS", "3")),
                max_cost_usd=float(os.getenv("FELIX_LOOP_MAX_COST_USD", "10.0")),
                max_tasks=int(max_tasks_raw) if max_tasks_raw else None,
                max_parallel_tasks=int(os.getenv("FELIX_LOOP_MAX_PARALLEL_TASKS", "3")),
                continue_on_failure=_env_bool("FELIX_LOOP_CONTINUE_ON_FAILURE", default=False),
                execution_mode=os.getenv("FELIX_LOOP_EXECUTION_MODE", "auto").strip().lower(),
                enable_parallel_execution=_env_bool(
                    "FELIX_LOOP_ENABLE_PARALLEL",
                    default=False,
                ),
                enable_checkpoints=_env_bool("FELIX_LOOP_ENABLE_CHECKPOINTS", default=True),
                dry_run=_env_bool("FELIX_LOOP_DRY_RUN", default=False),
                default_model=os.getenv("FELIX_LOOP_MODEL", "sonnet").strip(),
                backend=os.getenv("FELIX_LOOP_BACKEND", "cli").strip().lower(),
            ),
            router=RouterSettings(
                enable_cascade=_env_bool("FELIX_LOOP_ENABLE_CASCADE", default=True),
                max_escalations=int(os.getenv("FELIX_LOOP_MAX_ESCALATIONS", "3")),
                enable_history=_env_bool("FELIX_LOOP_ENABLE_HISTORY", default=True),
                enable_free_models=_env_bool("FELIX_LOOP_ENABLE_FREE_MODELS", default=False),
            ),
            health=HealthSettings(
                cache_ttl_seconds=float(os.getenv("FELIX_LOOP_HEALTH_TTL_SECONDS", "60")),
                max_consecutive_failures=int(
                    os.getenv("FELIX_LOOP_HEALTH_MAX_CONSECUTIVE_FAILURES", "3"),
                ),
                max_error_rate=float(os.getenv("FELIX_LOOP_HEALTH_MAX_ERROR_RATE", "0.5")),
                error_rate_window=int(os.getenv("FELIX_LOOP_HEALTH_WINDOW", "100")),
                probe_timeout_seconds=float(
                    os.getenv("FELIX_LOOP_HEALTH_PROBE_TIMEOUT_SECONDS", "10"),
                ),
            ),
            fallback=FallbackSettings(
                max_retries=int(os.getenv("FELIX_LOOP_FALLBACK_MAX_RETRIES", "2")),
                registry_cache_size=int(os.getenv("FELIX_LOOP_REGISTRY_CACHE_SIZE", "20")),
            ),
            retry=RetrySettings(
                backoff_strategy=os.getenv("FELIX_LOOP_BACKOFF", "exponential").strip().lower(),
                base_delay_seconds=float(os.getenv("FELIX_LOOP_RETRY_BASE_SECONDS", "2.0")),
                max_delay_seconds=float(os.getenv("FELIX_LOOP_RETRY_MAX_SECONDS", "60.0")),
            ),
            validation=ValidationSettings(
                post_task_commands=_env_list("FELIX_LOOP_VALIDATION_COMMANDS"),
                final_validation_command=os.getenv("FELIX_LOOP_FINAL_VALIDATION_COMMAND")
                or None,
                quality_gate_commands=_env_list("FELIX_LOOP_QUALITY_GATE_COMMANDS"),
                command_timeout_seconds=int(
                    os.getenv("FELIX_LOOP_VALIDATION_TIMEOUT_SECONDS", "300"),
                ),
                circuit_breaker_threshold=int(
                    os.getenv("FELIX_LOOP_CIRCUIT_BREAKER_THRESHOLD", "0"),
                ),
                circuit_breaker_reset_seconds=float(
                    os.getenv("FELIX_LOOP_CIRCUIT_BREAKER_RESET_SECONDS", "60"),
                ),
            ),
            commands=CommandSettings(
                cli_command_templates=_collect_overrides(
                    DEFAULT_CLI_COMMAND_TEMPLATES,
                    suffix="COMMAND_TEMPLATE",
                ),
                api_base_urls=_collect_overrides(DEFAULT_API_BASE_URLS, suffix="API_BASE_URL"),
                api_timeout_seconds=float(os.getenv("FELIX_LOOP_API_TIMEOUT_SECONDS", "600")),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` naming the first invalid setting."""

        if self.run.max_attempts < 1:
            raise ValueError("FELIX_LOOP_MAX_ATTEMPTS must be >= 1.")
        if self.run.max_cost_usd < 0:
            raise ValueError("FELIX_LOOP_MAX_COST_USD must be >= 0.")
        if self.run.max_tasks is not None and self.run.max_tasks < 1:
            raise ValueError("FELIX_LOOP_MAX_TASKS must be >= 1 when set.")
        if self.run.max_parallel_tasks < 1:
            raise ValueError("FELIX_LOOP_MAX_PARALLEL_TASKS must be >= 1.")
        if self.run.execution_mode not in EXECUTION_MODES:
            raise ValueError(
                f"FELIX_LOOP_EXECUTION_MODE must be one of {', '.join(EXECUTION_MODES)}, "
                f"got {self.run.execution_mode!r}.",
            )
        if self.run.backend not in BACKENDS:
            raise ValueError(f"FELIX_LOOP_BACKEND must be cli or api, got {self.run.backend!r}.")
        if self.retry.backoff_strategy not in BACKOFF_STRATEGIES:
            raise ValueError(
                f"FELIX_LOOP_BACKOFF must be one of {', '.join(BACKOFF_STRATEGIES)}, "
                f"got {self.retry.backoff_strategy!r}.",
            )
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if self.health.cache_ttl_seconds < 0:
            raise ValueError("FELIX_LOOP_HEALTH_TTL_SECONDS must be >= 0.")
        if self.health.max_consecutive_failures < 1:
            raise ValueError("FELIX_LOOP_HEALTH_MAX_CONSECUTIVE_FAILURES must be >= 1.")
        if not 0.0 <= self.health.max_error_rate <= 1.0:
            raise ValueError("FELIX_LOOP_HEALTH_MAX_ERROR_RATE must be within [0, 1].")
        if self.health.error_rate_window < 1:
            raise ValueError("FELIX_LOOP_HEALTH_WINDOW must be >= 1.")
        if self.fallback.max_retries < 0:
            raise ValueError("FELIX_LOOP_FALLBACK_MAX_RETRIES must be >= 0.")
        if self.router.max_escalations < 0:
            raise ValueError("FELIX_LOOP_MAX_ESCALATIONS must be >= 0.")
        if self.validation.circuit_breaker_threshold < 0:
            raise ValueError("FELIX_LOOP_CIRCUIT_BREAKER_THRESHOLD must be >= 0.")


def _collect_overrides(defaults: dict[str, str], *, suffix: str) -> dict[str, str]:
    resolved = dict(defaults)
    for provider in ("anthropic", "google", "openai", "groq"):
        value = os.getenv(f"FELIX_LOOP_{provider.upper()}_{suffix}", "").strip()
        if value:
            resolved[provider] = value
    return resolved


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    values: list[str] = []
    for part in raw.split(";"):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
