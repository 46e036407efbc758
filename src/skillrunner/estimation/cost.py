"""Cost calculation from token counts and per-token prices."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from skillrunner.providers.model_info import get_model_properties

if TYPE_CHECKING:
    from skillrunner.routing.config import RoutingConfiguration


@dataclass(frozen=True)
class Pricing:
    """Per-token prices in USD for one model."""

    input: float = 0.0
    output: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        """Price ``input_tokens`` and ``output_tokens`` independently."""
        return input_tokens * self.input + output_tokens * self.output


FREE = Pricing()


class CostCalculator:
    """Converts token counts into money for a (provider, model) pair.

    Prices come from the routing configuration's model table, then from
    the built-in model table. Local providers are always free.
    """

    def __init__(self, routing: RoutingConfiguration | None = None) -> None:
        self._routing = routing

    def pricing(self, provider: str, model: str, *, is_local: bool = False) -> Pricing:
        """Return the per-token prices for a model.

        Args:
            provider: Provider registry name.
            model: Model identifier.
            is_local: True for providers with zero marginal cost.

        Returns:
            Pricing, zero for local providers and unknown models.
        """
        if is_local:
            return FREE
        if self._routing is not None:
            configured = self._routing.model(provider, model)
            if configured is not None:
                return Pricing(configured.cost_per_input_token, configured.cost_per_output_token)
        known = get_model_properties(provider, model)
        if known is not None:
            return Pricing(known.cost_per_input_token, known.cost_per_output_token)
        return FREE

    def cost(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        *,
        is_local: bool = False,
    ) -> float:
        """Return the cost of a call in USD."""
        return self.pricing(provider, model, is_local=is_local).cost(input_tokens, output_tokens)
