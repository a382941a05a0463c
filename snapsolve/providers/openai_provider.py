"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import time
from collections.abc import Sequence

from openai import AsyncOpenAI

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

TEMPERATURE = 0.2


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK. Images travel as base64 data URLs."""

    def __init__(self, config: ProviderConfig, api_key: str, models: dict[str, str] | None = None) -> None:
        self._config = config
        self._models = models or {}
        api_key = (api_key or "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorKind.NOT_CONFIGURED)
        # Retries are owned by the orchestrator's RetryPolicy
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)

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
            {"role": "assistant" if turn.role == "assistant" else "user", "content": turn.content}
            for turn in history
        ]
        if images:
            content: str | list[dict] = [{"type": "text", "text": prompt}]
            content += [
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{guess_image_mime(img)};base64,{encode_image(img)}"},
                }
                for img in images
            ]
        else:
            content = prompt
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
                self._client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=max_tokens or self._config.max_tokens,
                    temperature=TEMPERATURE,
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

        choice = response.choices[0] if response.choices else None
        if choice is not None and choice.finish_reason == "content_filter":
            raise ProviderError(self._config.name, "Response blocked by content filter", ErrorKind.CONTENT_FILTERED)
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info(
            "%s %s (%s): %.2fs, %s tokens",
            self._config.name,
            stage,
            model,
            latency,
            token_count,
        )

        return ModelResponse(
            provider=self._config.name,
            model=model,
            stage=stage,
            content=choice.message.content,
            latency_sec=latency,
            token_count=token_count,
        )
