"""Provider registry: one adapter per configured provider, rebuilt on config change."""

import logging

from config.config_loader import AppSettings
from config.user_config import ConfigStore, UserConfig
from snapsolve.models import ErrorKind
from snapsolve.providers.anthropic import AnthropicProvider
from snapsolve.providers.base import AIProvider, ProviderError
from snapsolve.providers.gemini import GeminiProvider
from snapsolve.providers.groq import GroqProvider
from snapsolve.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "anthropic": AnthropicProvider,
    "groq": GroqProvider,
}

STAGES = ("solution", "debugging", "extraction")


def _stage_models(settings: AppSettings, config: UserConfig, name: str) -> dict[str, str]:
    """Per-stage models for ``name``. Only the active provider uses the configured picks."""
    provider_cfg = settings.providers[name]
    if name != config.provider:
        return {stage: provider_cfg.default_model for stage in STAGES}
    return {stage: provider_cfg.sanitize_model(config.model_for_stage(stage)) for stage in STAGES}


def build_providers(
    settings: AppSettings,
    store: ConfigStore,
    config: UserConfig,
    provider_classes: dict[str, type[AIProvider]] | None = None,
) -> tuple[dict[str, AIProvider], dict[str, ProviderError]]:
    """Build every provider that has a credential.

    Returns:
        (providers, errors) where errors holds the reason each remaining
        catalog provider could not be built.
    """
    classes = provider_classes or PROVIDER_CLASSES
    providers: dict[str, AIProvider] = {}
    errors: dict[str, ProviderError] = {}
    for name, provider_cfg in settings.providers.items():
        cls = classes.get(provider_cfg.sdk)
        if cls is None:
            logger.warning("Provider '%s' has unknown sdk '%s', skipping", name, provider_cfg.sdk)
            errors[name] = ProviderError(name, f"Unknown sdk '{provider_cfg.sdk}'", ErrorKind.NOT_CONFIGURED)
            continue
        api_key = store.api_key_for(name, config)
        if not api_key:
            errors[name] = ProviderError(name, f"Missing API key: {provider_cfg.api_key_env}", ErrorKind.NOT_CONFIGURED)
            continue
        try:
            providers[name] = cls(provider_cfg, api_key, _stage_models(settings, config, name))
        except ProviderError as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
            errors[name] = exc
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
            errors[name] = ProviderError(name, f"Client setup failed: {exc}", ErrorKind.NOT_CONFIGURED)
    return providers, errors


class ProviderRegistry:
    """Map of provider name to adapter, swapped as a whole on every config change.

    A call that already fetched an adapter keeps using that instance even if
    a rebuild happens while it is in flight.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: ConfigStore,
        provider_classes: dict[str, type[AIProvider]] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._classes = provider_classes
        self._state: tuple[dict[str, AIProvider], dict[str, ProviderError]] = ({}, {})
        self.rebuild(store.load())
        self._unsubscribe = store.on_change(self.rebuild)

    def rebuild(self, config: UserConfig) -> None:
        providers, errors = build_providers(self._settings, self._store, config, self._classes)
        self._state = (providers, errors)
        logger.info(
            "Providers initialized: %s (active: %s)",
            ", ".join(sorted(providers)) or "none",
            config.provider,
        )

    def get(self, name: str) -> AIProvider:
        """Return the adapter for ``name``.

        Raises:
            ProviderError: kind NOT_CONFIGURED when the provider has no
                credential or is unknown.
        """
        providers, errors = self._state
        if name in providers:
            return providers[name]
        if name in errors:
            err = errors[name]
            raise ProviderError(name, err.reason, err.kind)
        raise ProviderError(name, "Unknown provider", ErrorKind.NOT_CONFIGURED)

    def available(self) -> dict[str, AIProvider]:
        return dict(self._state[0])

    def unavailable(self) -> dict[str, str]:
        """Reason per catalog provider that could not be built."""
        return {name: err.reason for name, err in self._state[1].items()}

    def close(self) -> None:
        self._unsubscribe()
