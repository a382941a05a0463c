"""Pure dataclasses and enums for the screenshot answering pipeline. No logic, no deps."""

from dataclasses import dataclass
from enum import Enum

ANSWER_NOT_FOUND = "Answer not found"

VIEW_QUEUE = "queue"
VIEW_SOLUTIONS = "solutions"

SLOT_INITIAL = "initial"
SLOT_DEBUG = "debug"


class ErrorKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    RETRYABLE_TRANSIENT = "retryable_transient"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    CONTENT_FILTERED = "content_filtered"
    UNKNOWN = "unknown"
    # Pipeline-level failures, never produced by an adapter
    NO_SCREENSHOTS = "no_screenshots"
    OCR_FAILED = "ocr_failed"


class McqKind(str, Enum):
    SINGLE = "single"
    MULTI = "multi"
    FILL_BLANK = "fill_blank"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ConversationTurn:
    role: str              # "user" or "assistant"
    content: str


@dataclass
class ModelResponse:
    provider: str
    model: str
    stage: str             # "solution", "debugging" or "extraction"
    content: str
    latency_sec: float
    token_count: int | None


@dataclass(frozen=True)
class MultipleChoice:
    answer_label: str      # "B", "A, C", "" for fill-in-the-blank, or ANSWER_NOT_FOUND
    answer_value: str
    reasoning: str
    raw_text: str
    kind: McqKind = McqKind.SINGLE
    labels: tuple[str, ...] = ()
    option_number: int | None = None   # legacy "option 2/B)" answers only

    variant = "multiple_choice"

    @property
    def found(self) -> bool:
        return self.kind is not McqKind.NOT_FOUND


@dataclass(frozen=True)
class CodeSolution:
    code: str
    concept: str
    raw_text: str
    language: str = "python"

    variant = "code_solution"


@dataclass(frozen=True)
class WebMarkup:
    html: str
    css: str
    raw_text: str

    variant = "web_markup"


@dataclass(frozen=True)
class PlainText:
    text: str

    variant = "plain_text"


StructuredAnswer = MultipleChoice | CodeSolution | WebMarkup | PlainText


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    progress: int          # 0..100
    is_error: bool = False


@dataclass
class PendingRequest:
    slot: str
    provider: str
    model: str
    prompt: str
    image_count: int = 0
    canceled_by_user: bool = False


@dataclass
class PipelineOutcome:
    status: str            # "success", "failed", "canceled" or "noop"
    slot: str | None = None
    answer: StructuredAnswer | None = None
    error_kind: ErrorKind | None = None
    message: str = ""
    response: ModelResponse | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"
