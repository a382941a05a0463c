"""Shared pytest fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.config_loader import AppSettings, load_config
from config.user_config import ConfigStore
from snapsolve.events import RecordingSink
from snapsolve.models import ErrorKind, ModelResponse
from snapsolve.orchestrator import Orchestrator
from snapsolve.providers.base import AIProvider, ProviderError
from snapsolve.retry import RetryPolicy
from snapsolve.screenshots import ScreenshotStore

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16

MCQ_RESPONSE = "```markdown\n2 + 2 is 4.\n```\nFINAL ANSWER: B 4"


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(
        self,
        provider_name: str = "gemini",
        response_content: str = MCQ_RESPONSE,
        supports_images: bool = True,
    ) -> None:
        self._name = provider_name
        self._response_content = response_content
        self.supports_images = supports_images
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because complete is defined in the class body below.
        self.complete = AsyncMock(  # type: ignore[assignment]
            return_value=ModelResponse(
                provider=provider_name,
                model="mock-model",
                stage="solution",
                content=response_content,
                latency_sec=0.1,
                token_count=10,
            )
        )

    def name(self) -> str:
        return self._name

    def model_string(self, stage: str = "solution") -> str:
        return f"mock-{stage}"

    async def complete(self, prompt, images=(), history=(), stage="solution", max_tokens=None):  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return ModelResponse(self._name, "mock-model", stage, self._response_content, 0.1, 10)


class StaticRegistry:
    """Stands in for ProviderRegistry with a fixed set of adapters."""

    def __init__(self, providers: dict[str, AIProvider]) -> None:
        self._providers = providers

    def get(self, name: str) -> AIProvider:
        if name not in self._providers:
            raise ProviderError(name, "Missing API key", ErrorKind.NOT_CONFIGURED)
        return self._providers[name]

    def available(self) -> dict[str, AIProvider]:
        return dict(self._providers)


def make_response(content: str, provider: str = "gemini", stage: str = "solution") -> ModelResponse:
    return ModelResponse(provider, "mock-model", stage, content, 0.1, 10)


@pytest.fixture
def settings() -> AppSettings:
    return load_config()


@pytest.fixture
def config_store(settings: AppSettings, tmp_path: Path) -> ConfigStore:
    return ConfigStore(settings, tmp_path / "config.yaml")


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def retry_policy(no_sleep: AsyncMock) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0, sleep=no_sleep)


@pytest.fixture
def screenshot_files(tmp_path: Path) -> list[Path]:
    paths = []
    for i in range(2):
        path = tmp_path / f"shot_{i}.png"
        path.write_bytes(PNG_BYTES + bytes([i]))
        paths.append(path)
    return paths


@pytest.fixture
def error_screenshot(tmp_path: Path) -> Path:
    path = tmp_path / "error.png"
    path.write_bytes(PNG_BYTES + b"err")
    return path


@pytest.fixture
def mock_ocr() -> MagicMock:
    ocr = MagicMock()
    ocr.extract_text_from_multiple = AsyncMock(return_value="What is 2 + 2?\nA) 3\nB) 4")
    return ocr


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def screenshot_store() -> ScreenshotStore:
    return ScreenshotStore(max_size=5)


@pytest.fixture
def orchestrator(
    settings, screenshot_store, config_store, mock_provider, mock_ocr, sink, retry_policy
) -> Orchestrator:
    return Orchestrator(
        settings,
        screenshot_store,
        config_store,
        StaticRegistry({"gemini": mock_provider}),
        mock_ocr,
        sink,
        retry_policy=retry_policy,
    )
