"""Provider router: profile-based selection with a fallback chain.

Selection policy per routing profile:

- ``cheap``: first enabled local provider; otherwise the fallback chain.
- ``premium``: first enabled non-local provider; otherwise the fallback chain.
- ``balanced``: the provider listing the profile's preferred model, if one
  is configured; otherwise the first enabled provider of the fallback
  chain. This policy is deliberately simple and does not weigh cost.

At call time every candidate is tried once, in order, until one succeeds.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from skillrunner.errors import NoProvidersError
from skillrunner.observability.logging import get_logger
from skillrunner.providers.base import (
    ProviderError,
    ProviderExhaustedError,
    ProviderTimeoutError,
)
from skillrunner.routing.config import RateLimits
from skillrunner.routing.limits import RateLimiter
from skillrunner.skills.models import validate_profile

if TYPE_CHECKING:
    from skillrunner.providers.base import ChunkHandler, CompletionRequest, CompletionResponse
    from skillrunner.providers.registry import ProviderRegistry
    from skillrunner.routing.config import RoutingConfiguration
    from skillrunner.skills.models import Phase, SkillRouting

log = get_logger(__name__)


@dataclass(frozen=True)
class ModelSelection:
    """A resolved (provider, model) pair.

    Attributes:
        model_id: Model identifier to request.
        provider_name: Registry name of the provider.
        is_fallback: True when this is not the profile's first choice.
        is_local: True when the provider runs locally at zero cost.
    """

    model_id: str
    provider_name: str
    is_fallback: bool = False
    is_local: bool = False


class Router:
    """Resolves routing profiles to providers and runs calls with fallback.

    Safe for concurrent use by several phase tasks. Rate limiters are
    created per provider on first use.
    """

    def __init__(self, config: RoutingConfiguration, registry: ProviderRegistry) -> None:
        self._config = config
        self._registry = registry
        self._limiters: dict[str, RateLimiter] = {}

    @property
    def config(self) -> RoutingConfiguration:
        """The routing configuration in use."""
        return self._config

    # ------------------------------------------------------------------
    # Provider ordering
    # ------------------------------------------------------------------

    def enabled_providers(self) -> list[str]:
        """Registered, enabled providers by ascending priority.

        Ties keep registration order. A registered provider without
        routing settings counts as enabled with priority 0.
        """
        names = self._registry.names()
        registration = {name: i for i, name in enumerate(names)}

        def _priority(name: str) -> int:
            settings = self._config.provider(name)
            return settings.priority if settings is not None else 0

        enabled = [
            name
            for name in names
            if (settings := self._config.provider(name)) is None or settings.enabled
        ]
        return sorted(enabled, key=lambda n: (_priority(n), registration[n]))

    def has_providers(self) -> bool:
        """True when at least one provider can be selected."""
        return bool(self.enabled_providers())

    def require_providers(self) -> None:
        """Raise unless at least one provider can be selected.

        Raises:
            NoProvidersError: If no provider is registered and enabled.
        """
        if not self.has_providers():
            raise NoProvidersError()

    def attempt_order(self) -> list[str]:
        """Enabled providers in fallback order.

        Enabled fallback-chain entries come first, in chain order, followed
        by any other enabled provider by priority.
        """
        enabled = self.enabled_providers()
        chain = [name for name in dict.fromkeys(self._config.fallback_chain) if name in enabled]
        return chain + [name for name in enabled if name not in chain]

    def _is_local(self, name: str) -> bool:
        provider = self._registry.get(name)
        return provider is not None and provider.info.is_local

    # ------------------------------------------------------------------
    # Model choice
    # ------------------------------------------------------------------

    def _model_hints(
        self,
        profile: str,
        phase: Phase | None,
        skill_routing: SkillRouting | None,
    ) -> list[str]:
        """Preferred model ids, most specific first."""
        review = phase is not None and phase.is_review
        settings = self._config.profile(profile)
        hints: list[str] = []
        if skill_routing is not None:
            if review:
                hints.append(skill_routing.review_model)
            hints.append(skill_routing.generation_model)
        if review:
            hints.append(settings.review_model)
        hints.append(settings.generation_model)
        return [h for h in dict.fromkeys(hints) if h]

    def _fallback_hints(self, profile: str, skill_routing: SkillRouting | None) -> list[str]:
        hints = [self._config.profile(profile).fallback_model]
        if skill_routing is not None:
            hints.insert(0, skill_routing.fallback_model)
        return [h for h in hints if h]

    def _provider_listing(self, model_id: str) -> str | None:
        for name in self.attempt_order():
            settings = self._config.provider(name)
            if settings is not None and model_id in settings.enabled_models():
                return name
        return None

    def _model_for(self, provider_name: str, profile: str, hints: list[str]) -> str:
        """Pick the model to request from one provider.

        Order: a hinted model the provider lists, then the provider's first
        enabled model of the profile's tier, then its first enabled model,
        then the provider's default model.
        """
        settings = self._config.provider(provider_name)
        listed = settings.enabled_models() if settings is not None else []
        for hint in hints:
            if hint in listed:
                return hint
        if settings is not None:
            for model_id in listed:
                if settings.models[model_id].tier == profile:
                    return model_id
        if listed:
            return listed[0]
        provider = self._registry.get(provider_name)
        return provider.default_model if provider is not None else ""

    def _first_choice(
        self,
        profile: str,
        hints: list[str],
    ) -> tuple[str, str | None, bool]:
        """Return (provider, pinned model or None, is_fallback) for a profile."""
        enabled = self.enabled_providers()
        if not enabled:
            raise NoProvidersError()
        order = self.attempt_order()

        if profile == "cheap":
            local = [name for name in enabled if self._is_local(name)]
            if local:
                return local[0], None, False
            return order[0], None, True

        if profile == "premium":
            remote = [name for name in enabled if not self._is_local(name)]
            if remote:
                return remote[0], None, False
            return order[0], None, True

        for hint in hints:
            listing = self._provider_listing(hint)
            if listing is not None:
                return listing, hint, False
        return order[0], None, False

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def candidates(
        self,
        profile: str,
        phase: Phase | None = None,
        skill_routing: SkillRouting | None = None,
    ) -> list[ModelSelection]:
        """Ordered selections to try: the first choice, then the fallback chain.

        Args:
            profile: Routing profile name.
            phase: Phase being routed; review phases prefer review models.
            skill_routing: Skill-level model hints.

        Returns:
            Non-empty list; every entry after the first is a fallback.

        Raises:
            InvalidProfileError: If ``profile`` is unknown.
            NoProvidersError: If no provider is enabled.
        """
        validate_profile(profile)
        hints = self._model_hints(profile, phase, skill_routing)
        first, pinned, is_fallback = self._first_choice(profile, hints)
        selections = [
            ModelSelection(
                model_id=pinned or self._model_for(first, profile, hints),
                provider_name=first,
                is_fallback=is_fallback,
                is_local=self._is_local(first),
            )
        ]
        fallback_hints = self._fallback_hints(profile, skill_routing) + hints
        for name in self.attempt_order():
            if name == first:
                continue
            selections.append(
                ModelSelection(
                    model_id=self._model_for(name, profile, fallback_hints),
                    provider_name=name,
                    is_fallback=True,
                    is_local=self._is_local(name),
                )
            )
        return selections

    def select(
        self,
        profile: str,
        phase: Phase | None = None,
        skill_routing: SkillRouting | None = None,
    ) -> ModelSelection:
        """Resolve a profile to the provider and model tried first.

        Raises:
            InvalidProfileError: If ``profile`` is unknown.
            NoProvidersError: If no provider is enabled.
        """
        return self.candidates(profile, phase, skill_routing)[0]

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _limiter(self, name: str) -> RateLimiter:
        limiter = self._limiters.get(name)
        if limiter is None:
            settings = self._config.provider(name)
            limiter = RateLimiter(settings.rate_limits if settings is not None else RateLimits())
            self._limiters[name] = limiter
        return limiter

    def _timeout(self, name: str) -> float | None:
        settings = self._config.provider(name)
        return settings.timeout if settings is not None else None

    async def complete(
        self,
        profile: str,
        request: CompletionRequest,
        *,
        phase: Phase | None = None,
        skill_routing: SkillRouting | None = None,
    ) -> tuple[CompletionResponse, ModelSelection]:
        """Run a completion, advancing the fallback chain on provider errors.

        Returns:
            The response and the selection that produced it.

        Raises:
            ProviderExhaustedError: If every candidate failed.
            NoProvidersError: If no provider is enabled.
        """
        return await self._call(profile, request, None, phase, skill_routing)

    async def stream(
        self,
        profile: str,
        request: CompletionRequest,
        on_chunk: ChunkHandler,
        *,
        phase: Phase | None = None,
        skill_routing: SkillRouting | None = None,
    ) -> tuple[CompletionResponse, ModelSelection]:
        """Stream a completion with fallback.

        A candidate is abandoned for the next one only if it fails before
        emitting any fragment. A failure after the first fragment is raised
        as-is, since the caller has already consumed partial output.

        Raises:
            ProviderError: If a candidate fails mid-stream.
            ProviderExhaustedError: If every candidate failed before streaming.
        """
        return await self._call(profile, request, on_chunk, phase, skill_routing)

    async def _call(
        self,
        profile: str,
        request: CompletionRequest,
        on_chunk: ChunkHandler | None,
        phase: Phase | None,
        skill_routing: SkillRouting | None,
    ) -> tuple[CompletionResponse, ModelSelection]:
        attempts: list[tuple[str, str]] = []
        phase_id = phase.id if phase is not None else None

        for selection in self.candidates(profile, phase, skill_routing):
            name = selection.provider_name
            provider = self._registry.get(name)
            if provider is None:
                continue
            call_request = replace(request, model_id=selection.model_id)
            timeout = self._timeout(name)
            emitted = False

            async def _forward(fragment: str) -> None:
                nonlocal emitted
                emitted = True
                assert on_chunk is not None
                await on_chunk(fragment)

            try:
                async with self._limiter(name):
                    async with asyncio.timeout(timeout):
                        if on_chunk is None:
                            response = await provider.complete(call_request)
                        else:
                            response = await provider.stream(call_request, _forward)
            except TimeoutError as e:
                error: ProviderError = ProviderTimeoutError(
                    name, f"call exceeded {timeout}s timeout"
                )
                error.__cause__ = e
            except ProviderError as e:
                error = e
            else:
                final = selection if not attempts else replace(selection, is_fallback=True)
                if final.is_fallback:
                    log.info(
                        "provider_fallback_used",
                        phase=phase_id,
                        provider=name,
                        model=final.model_id,
                        failed=[n for n, _ in attempts],
                    )
                return response, final

            if emitted:
                log.warning("provider_stream_interrupted", phase=phase_id, provider=name)
                raise error
            log.warning(
                "provider_call_failed",
                phase=phase_id,
                provider=name,
                model=selection.model_id,
                error=str(error),
            )
            attempts.append((name, str(error)))

        raise ProviderExhaustedError(attempts)
