"""Groq provider using openai SDK (OpenAI-compatible API). Text only."""

from collections.abc import Sequence

from config.config_loader import ProviderConfig
from snapsolve.models import ConversationTurn, ErrorKind, ModelResponse
from snapsolve.providers.base import ProviderError
from snapsolve.providers.openai_provider import OpenAIProvider


class GroqProvider(OpenAIProvider):
    """Groq provider via OpenAI-compatible API.

    The hosted models are text-only here: screenshots must be flattened to
    text (OCR) before they reach this adapter.
    """

    supports_images = False

    def __init__(self, config: ProviderConfig, api_key: str, models: dict[str, str] | None = None) -> None:
        if not config.base_url:
            raise ProviderError(config.name, "base_url is required for Groq provider", ErrorKind.NOT_CONFIGURED)
        super().__init__(config, api_key, models)

    async def complete(
        self,
        prompt: str,
        images: Sequence[bytes] = (),
        history: Sequence[ConversationTurn] = (),
        stage: str = "solution",
        max_tokens: int | None = None,
    ) -> ModelResponse:
        if images:
            raise ValueError(f"{self._config.name} is text-only; got {len(images)} image(s)")
        return await super().complete(prompt, (), history, stage, max_tokens)
