"""Abstract base for all AI model providers, plus shared error classification."""

import base64
from abc import ABC, abstractmethod
from collections.abc import Sequence

from snapsolve.models import ConversationTurn, ErrorKind, ModelResponse

_TRANSIENT_STATUS = {502, 503, 504}
_TRANSIENT_MARKERS = ("timed out", "timeout", "connection reset", "connection aborted", "unavailable")
_FILTER_MARKERS = ("safety", "content_filter", "content filter", "blocked", "content_policy")


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> None:
        self.provider_name = provider_name
        self.kind = kind
        self.reason = message
        super().__init__(f"[{provider_name}] {message}")

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE_TRANSIENT


def _status_code(exc: BaseException) -> int | None:
    """HTTP status from an SDK exception (openai/anthropic use status_code, google-genai uses code)."""
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_status(status: int, message: str = "") -> ErrorKind:
    if status in _TRANSIENT_STATUS:
        return ErrorKind.RETRYABLE_TRANSIENT
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.INVALID_CREDENTIALS
    if status == 413:
        return ErrorKind.PAYLOAD_TOO_LARGE
    if status == 400 and any(m in message.lower() for m in _FILTER_MARKERS):
        return ErrorKind.CONTENT_FILTERED
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an SDK or transport exception to an ErrorKind."""
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.RETRYABLE_TRANSIENT

    status = _status_code(exc)
    if status is not None:
        return classify_status(status, str(exc))

    # Connection-class errors from the SDKs (APIConnectionError, APITimeoutError)
    # carry no status code; the transport error text is the only signal.
    text = str(exc).lower()
    if "connection" in type(exc).__name__.lower() or "timeout" in type(exc).__name__.lower():
        return ErrorKind.RETRYABLE_TRANSIENT
    if any(m in text for m in _TRANSIENT_MARKERS):
        return ErrorKind.RETRYABLE_TRANSIENT
    return ErrorKind.UNKNOWN


def guess_image_mime(data: bytes) -> str:
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def encode_image(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class AIProvider(ABC):
    """Abstract base for all AI model providers.

    Cancellation is asyncio task cancellation: implementations await the SDK
    call directly so a cancelled task aborts the underlying HTTP request.
    """

    supports_images: bool = True

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'anthropic')."""
        ...

    @abstractmethod
    def model_string(self, stage: str = "solution") -> str:
        """Return the model identifier used for ``stage``."""
        ...

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        images: Sequence[bytes] = (),
        history: Sequence[ConversationTurn] = (),
        stage: str = "solution",
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Generate one completion.

        Args:
            prompt: Instruction text for this turn.
            images: Raw image bytes attached to this turn.
            history: Prior turns of the question session, oldest first.
            stage: "solution", "debugging" or "extraction"; selects the model.
            max_tokens: Override for the provider's output token limit.

        Returns:
            ModelResponse dataclass with content and metadata.

        Raises:
            ProviderError: On API failure, timeout, or invalid response.
        """
        ...
