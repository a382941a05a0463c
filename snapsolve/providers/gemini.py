"""Gemini provider using google-genai SDK with native async."""

import asyncio
import logging
import time
from collections.abc import Sequence

from google import genai
from google.genai import types as genai_types

from config.config_loader import ProviderConfig
from snapsolve.models import ConversationTurn, ErrorKind, ModelResponse
from snapsolve.providers.base import AIProvider, ProviderError, classify_exception, guess_image_mime

logger = logging.getLogger(__name__)

TEMPERATURE = 0.2

_BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "RECITATION"}


def _reason_name(reason) -> str:
    return str(getattr(reason, "name", reason) or "")


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ProviderConfig, api_key: str, models: dict[str, str] | None = None) -> None:
        self._config = config
        self._models = models or {}
        api_key = (api_key or "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorKind.NOT_CONFIGURED)
        http_options = genai_types.HttpOptions(base_url=config.base_url) if config.base_url else None
        self._client = genai.Client(api_key=api_key, http_options=http_options)

    def name(self) -> str:
        return self._config.name

    def model_string(self, stage: str = "solution") -> str:
        return self._models.get(stage) or self._config.default_model

    def _build_contents(
        self,
        prompt: str,
        images: Sequence[bytes],
        history: Sequence[ConversationTurn],
    ) -> list[genai_types.Content]:
        # Gemini names the assistant role "model"
        contents = [
            genai_types.Content(
                role="model" if turn.role == "assistant" else "user",
                parts=[genai_types.Part.from_text(text=turn.content)],
            )
            for turn in history
        ]
        parts = [genai_types.Part.from_text(text=prompt)]
        parts += [genai_types.Part.from_bytes(data=img, mime_type=guess_image_mime(img)) for img in images]
        contents.append(genai_types.Content(role="user", parts=parts))
        return contents

    def _check_blocked(self, response) -> None:
        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise ProviderError(
                self._config.name,
                f"Prompt blocked: {_reason_name(feedback.block_reason)}",
                ErrorKind.CONTENT_FILTERED,
            )
        candidates = getattr(response, "candidates", None) or []
        if candidates and _reason_name(candidates[0].finish_reason) in _BLOCKED_FINISH_REASONS:
            raise ProviderError(
                self._config.name,
                f"Response blocked: {_reason_name(candidates[0].finish_reason)}",
                ErrorKind.CONTENT_FILTERED,
            )

    async def complete(
        self,
        prompt: str,
        images: Sequence[bytes] = (),
        history: Sequence[ConversationTurn] = (),
        stage: str = "solution",
        max_tokens: int | None = None,
    ) -> ModelResponse:
        model = self.model_string(stage)
        contents = self._build_contents(prompt, images, history)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=model,
                    contents=contents,
                    config=genai_types.GenerateContentConfig(
                        temperature=TEMPERATURE,
                        max_output_tokens=max_tokens or self._config.max_tokens,
                    ),
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

        self._check_blocked(response)
        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info(
            "Gemini %s (%s): %.2fs, %s tokens",
            stage,
            model,
            latency,
            token_count,
        )

        return ModelResponse(
            provider=self._config.name,
            model=model,
            stage=stage,
            content=response.text,
            latency_sec=latency,
            token_count=token_count,
        )
