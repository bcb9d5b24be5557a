"""Built-in model and provider catalogue."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace

from felix_loop.models import Backend, ModelTier
from felix_loop.routing.tiers import TIER_ORDER, tier_rank

BOTH_BACKENDS = frozenset({Backend.CLI, Backend.API})
API_ONLY = frozenset({Backend.API})


@dataclass(slots=True, frozen=True)
class ProviderSpec:
    """How a provider is detected and reached."""

    name: str
    cli_executable: str | None
    model_prefixes: tuple[str, ...]
    api_key_env: str


@dataclass(slots=True, frozen=True)
class ModelSpec:
    """One routable model with its tier and per-1M-token pricing."""

    id: str
    provider: str
    tier: ModelTier
    input_per_1m: float
    output_per_1m: float
    api_model_name: str
    backends: frozenset[Backend] = BOTH_BACKENDS
    aliases: tuple[str, ...] = ()
    enabled: bool = True

    @property
    def blended_price(self) -> float:
        return self.input_per_1m + self.output_per_1m


PROVIDERS: tuple[ProviderSpec, ...] = (
    ProviderSpec(
        name="anthropic",
        cli_executable="claude",
        model_prefixes=("claude-",),
        api_key_env="ANTHROPIC_API_KEY",
    ),
    ProviderSpec(
        name="google",
        cli_executable="gemini",
        model_prefixes=("gemini-",),
        api_key_env="GEMINI_API_KEY",
    ),
    ProviderSpec(
        name="openai",
        cli_executable=None,
        model_prefixes=("gpt-", "o1"),
        api_key_env="OPENAI_API_KEY",
    ),
    ProviderSpec(
        name="groq",
        cli_executable=None,
        model_prefixes=("llama", "mixtral"),
        api_key_env="GROQ_API_KEY",
    ),
)

DEFAULT_MODELS: tuple[ModelSpec, ...] = (
    ModelSpec(
        id="llama-70b",
        provider="groq",
        tier=ModelTier.FREE,
        input_per_1m=0.0,
        output_per_1m=0.0,
        api_model_name="llama-3.3-70b-versatile",
        backends=API_ONLY,
        aliases=("llama", "llama3"),
        enabled=False,
    ),
    ModelSpec(
        id="llama-8b",
        provider="groq",
        tier=ModelTier.FREE,
        input_per_1m=0.0,
        output_per_1m=0.0,
        api_model_name="llama-3.1-8b-instant",
        backends=API_ONLY,
        aliases=("llama-small",),
        enabled=False,
    ),
    ModelSpec(
        id="flash",
        provider="google",
        tier=ModelTier.CHEAP,
        input_per_1m=0.075,
        output_per_1m=0.3,
        api_model_name="gemini-2.0-flash",
        aliases=("gemini-flash",),
    ),
    ModelSpec(
        id="haiku",
        provider="anthropic",
        tier=ModelTier.CHEAP,
        input_per_1m=0.25,
        output_per_1m=1.25,
        api_model_name="claude-3-5-haiku-latest",
        aliases=("claude-haiku",),
    ),
    ModelSpec(
        id="gpt-4o-mini",
        provider="openai",
        tier=ModelTier.CHEAP,
        input_per_1m=0.15,
        output_per_1m=0.6,
        api_model_name="gpt-4o-mini",
        backends=API_ONLY,
        aliases=("4o-mini",),
    ),
    ModelSpec(
        id="pro",
        provider="google",
        tier=ModelTier.MID,
        input_per_1m=1.25,
        output_per_1m=5.0,
        api_model_name="gemini-2.0-pro",
        aliases=("gemini-pro",),
    ),
    ModelSpec(
        id="sonnet",
        provider="anthropic",
        tier=ModelTier.MID,
        input_per_1m=3.0,
        output_per_1m=15.0,
        api_model_name="claude-sonnet-4-20250514",
        aliases=("claude-sonnet",),
    ),
    ModelSpec(
        id="gpt-4o",
        provider="openai",
        tier=ModelTier.MID,
        input_per_1m=2.5,
        output_per_1m=10.0,
        api_model_name="gpt-4o",
        backends=API_ONLY,
        aliases=("4o",),
    ),
    ModelSpec(
        id="opus",
        provider="anthropic",
        tier=ModelTier.PREMIUM,
        input_per_1m=15.0,
        output_per_1m=75.0,
        api_model_name="claude-opus-4-5-20251101",
        aliases=("claude-opus",),
    ),
    ModelSpec(
        id="o1",
        provider="openai",
        tier=ModelTier.PREMIUM,
        input_per_1m=15.0,
        output_per_1m=60.0,
        api_model_name="o1",
        backends=API_ONLY,
        aliases=("o1-preview",),
    ),
    ModelSpec(
        id="thinking",
        provider="google",
        tier=ModelTier.PREMIUM,
        input_per_1m=10.0,
        output_per_1m=40.0,
        api_model_name="gemini-2.0-flash-thinking-exp",
        aliases=("gemini-thinking",),
    ),
)


class ModelCatalog:
    """Lookup helpers over an immutable set of model and provider specs."""

    def __init__(
        self,
        models: Iterable[ModelSpec] = DEFAULT_MODELS,
        providers: Iterable[ProviderSpec] = PROVIDERS,
    ) -> None:
        self.models: tuple[ModelSpec, ...] = tuple(models)
        self.providers: tuple[ProviderSpec, ...] = tuple(providers)

    def with_enabled(self, model_ids: Iterable[str]) -> ModelCatalog:
        """Copy of the catalogue with the given models switched on."""

        wanted = set(model_ids)
        models = [
            replace(model, enabled=True) if model.id in wanted else model
            for model in self.models
        ]
        return ModelCatalog(models, self.providers)

    def enabled_models(self) -> list[ModelSpec]:
        return [model for model in self.models if model.enabled]

    def models_in_tier(self, tier: ModelTier) -> list[ModelSpec]:
        return [model for model in self.enabled_models() if model.tier is tier]

    def has_enabled_tier(self, tier: ModelTier) -> bool:
        return bool(self.models_in_tier(tier))

    def find_model(self, id_or_alias: str) -> ModelSpec | None:
        """Resolve a model by id or alias, case-insensitively."""

        needle = id_or_alias.strip().lower()
        for model in self.models:
            if model.id == needle or needle in model.aliases or model.api_model_name == needle:
                return model
        return None

    def get_provider(self, name: str) -> ProviderSpec | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    def detect_provider(self, model: str) -> str | None:
        """Provider for a model id, alias, or full vendor model name."""

        spec = self.find_model(model)
        if spec is not None:
            return spec.provider
        lowered = model.strip().lower()
        for provider in self.providers:
            if any(lowered.startswith(prefix) for prefix in provider.model_prefixes):
                return provider.name
        return None

    def get_default_model(self, tier: ModelTier) -> ModelSpec | None:
        """First enabled model of ``tier`` in catalogue order."""

        models = self.models_in_tier(tier)
        return models[0] if models else None

    def get_cheapest_model_in_tier(self, tier: ModelTier) -> ModelSpec | None:
        models = self.models_in_tier(tier)
        if not models:
            return None
        return min(models, key=lambda model: model.blended_price)

    def resolve_tier_model(self, tier: ModelTier) -> ModelSpec | None:
        """Default model for ``tier``, or the nearest enabled tier above, then below."""

        rank = tier_rank(tier)
        ordered = list(TIER_ORDER[rank:]) + list(reversed(TIER_ORDER[:rank]))
        for candidate in ordered:
            model = self.get_default_model(candidate)
            if model is not None:
                return model
        return None

    def equivalent_model(
        self,
        model: ModelSpec,
        *,
        provider: str,
        backend: Backend,
    ) -> ModelSpec | None:
        """Closest-tier enabled model of ``provider`` that supports ``backend``."""

        if model.provider == provider and backend in model.backends:
            return model
        candidates = [
            candidate
            for candidate in self.enabled_models()
            if candidate.provider == provider and backend in candidate.backends
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda candidate: (
                abs(tier_rank(candidate.tier) - tier_rank(model.tier)),
                -tier_rank(candidate.tier),
                candidate.blended_price,
            ),
        )


DEFAULT_CATALOG = ModelCatalog()
