"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import time
from collections.abc import Sequence

import anthropic as anthropic_sdk

from config.config_loader import ProviderConfig
from snapsolve.models import ConversationTurn, ErrorKind, ModelResponse
from snapsolve.providers.base import (
    AIProvider,
    ProviderError,
    classify_exception,
    encode_image,
    guess_image_mime,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ProviderConfig, api_key: str, models: dict[str, str] | None = None) -> None:
        self._config = config
        self._models = models or {}
        api_key = (api_key or "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorKind.NOT_CONFIGURED)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, base_url=config.base_url, max_retries=0)

    def name(self) -> str:
        return self._config.name

    def model_string(self, stage: str = "solution") -> str:
        return self._models.get(stage) or self._config.default_model

    def _build_messages(
        self,
        prompt: str,
        images: Sequence[bytes],
        history: Sequence[ConversationTurn],
    ) -> list[dict]:
        messages: list[dict] = [
            {
                "role": "assistant" if turn.role == "assistant" else "user",
                "content": [{"type": "text", "text": turn.content}],
            }
            for turn in history
        ]
        content: list[dict] = [{"type": "text", "text": prompt}]
        content += [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": guess_image_mime(img),
                    "data": encode_image(img),
                },
            }
            for img in images
        ]
        messages.append({"role": "user", "content": content})
        return messages

    async def complete(
        self,
        prompt: str,
        images: Sequence[bytes] = (),
        history: Sequence[ConversationTurn] = (),
        stage: str = "solution",
        max_tokens: int | None = None,
    ) -> ModelResponse:
        model = self.model_string(stage)
        messages = self._build_messages(prompt, images, history)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=model,
                    max_tokens=max_tokens or self._config.max_tokens,
                    messages=messages,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name,
                f"Request timed out after {self._config.timeout_sec}s",
                ErrorKind.RETRYABLE_TRANSIENT,
            ) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", classify_exception(exc)) from exc

        latency = time.monotonic() - start

        if getattr(response, "stop_reason", None) == "refusal":
            raise ProviderError(self._config.name, "Response refused by safety filter", ErrorKind.CONTENT_FILTERED)

        if not response.content:
            raise ProviderError(self._config.name, "Empty response content")

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        content = "\n".join(text_blocks)

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info(
            "Anthropic %s (%s): %.2fs, %s tokens",
            stage,
            model,
            latency,
            token_count,
        )

        return ModelResponse(
            provider=self._config.name,
            model=model,
            stage=stage,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
