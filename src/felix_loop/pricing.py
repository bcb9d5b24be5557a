"""Token cost estimation from catalogue rates and environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass

from felix_loop.routing.catalog import ModelCatalog


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float

    def cost(self, *, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1_000_000) * self.input_per_1m + (
            output_tokens / 1_000_000
        ) * self.output_per_1m


class PricingTable:
    """Pricing per ``(provider, model)``: env overrides first, then catalogue rates."""

    def __init__(self, catalog: ModelCatalog, *, overrides: str | None = None) -> None:
        self._catalog = catalog
        raw = overrides if overrides is not None else os.getenv("FELIX_LOOP_PRICING", "")
        self._overrides = parse_pricing_mapping(raw)

    def lookup(self, *, model: str, provider: str | None = None) -> ModelPricing | None:
        spec = self._catalog.find_model(model)
        resolved_provider = (provider or (spec.provider if spec else "")).strip().lower()
        model_keys = [model.strip()]
        if spec is not None and spec.id not in model_keys:
            model_keys.append(spec.id)

        for model_key in model_keys:
            direct = self._overrides.get((resolved_provider, model_key))
            if direct is not None:
                return direct
        wildcard_model = self._overrides.get((resolved_provider, "*"))
        if wildcard_model is not None:
            return wildcard_model
        for model_key in model_keys:
            wildcard_provider = self._overrides.get(("*", model_key))
            if wildcard_provider is not None:
                return wildcard_provider

        if spec is not None:
            return ModelPricing(input_per_1m=spec.input_per_1m, output_per_1m=spec.output_per_1m)
        return self._overrides.get(("*", "*"))

    def estimate_cost_usd(
        self,
        *,
        model: str,
        input_tokens: int,
        output_tokens: int,
        provider: str | None = None,
    ) -> float:
        """Cost of a call in USD. Unknown models cost nothing."""

        pricing = self.lookup(model=model, provider=provider)
        if pricing is None:
            return 0.0
        return pricing.cost(input_tokens=input_tokens, output_tokens=output_tokens)


def parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `FELIX_LOOP_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
