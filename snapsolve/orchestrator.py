"""Pipeline orchestration: pick a pipeline, call the backend with retry, parse, report.

Two slots run independently: the initial-question slot and the debug slot.
Each admits one in-flight request; starting a new request in a slot first
cancels the previous one and waits for it to finish unwinding.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from config.config_loader import AppSettings
from config.user_config import ConfigStore, UserConfig
from snapsolve.events import PresentationSink
from snapsolve.models import (
    SLOT_DEBUG,
    SLOT_INITIAL,
    VIEW_QUEUE,
    VIEW_SOLUTIONS,
    ConversationTurn,
    ErrorKind,
    ModelResponse,
    PendingRequest,
    PipelineOutcome,
    ProgressEvent,
    StructuredAnswer,
)
from snapsolve.ocr import OcrError, OcrExtractor, clean_ocr_text
from snapsolve.parser import parse_response
from snapsolve.providers.base import AIProvider, ProviderError
from snapsolve.providers.registry import ProviderRegistry
from snapsolve.retry import RetryPolicy
from snapsolve.screenshots import ScreenshotStore, existing_paths

logger = logging.getLogger(__name__)

CANCELED_MESSAGE = "Processing was canceled by the user."
NOTHING_TO_PROCESS = "Nothing to process"
NO_ERROR_SCREENSHOTS = "No error screenshots provided"

_DETAIL_MAX_CHARS = 200

ERROR_HINTS: dict[ErrorKind, str] = {
    ErrorKind.NOT_CONFIGURED: "API key not configured. Configure an API key for the selected provider in settings.",
    ErrorKind.RETRYABLE_TRANSIENT: "The AI service is temporarily unavailable. Please try again in a moment.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait a few minutes before trying again.",
    ErrorKind.INVALID_CREDENTIALS: "Invalid API key. Please check your key in settings.",
    ErrorKind.PAYLOAD_TOO_LARGE: "The request is too large. Reduce input size by using fewer or smaller screenshots.",
    ErrorKind.CONTENT_FILTERED: "The content was blocked by the provider's safety filter.",
    ErrorKind.UNKNOWN: "Processing failed. Please try again.",
    ErrorKind.NO_SCREENSHOTS: "No screenshots to process.",
    ErrorKind.OCR_FAILED: "Could not read text from the screenshots.",
}


class PipelineError(Exception):
    """A pipeline step failed before or around the backend call."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class RequestCanceled(Exception):
    """The request in a slot was canceled by the user or by a newer request."""

    def __init__(self, request: PendingRequest) -> None:
        self.request = request
        super().__init__(f"{request.slot} request canceled")


def error_kind(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (ProviderError, PipelineError)):
        return exc.kind
    if isinstance(exc, OcrError):
        return ErrorKind.OCR_FAILED
    if isinstance(exc, OSError):
        return ErrorKind.NO_SCREENSHOTS
    return ErrorKind.UNKNOWN


def user_message(kind: ErrorKind, detail: str = "") -> str:
    """One human-readable line per error kind, with an optional short detail suffix."""
    message = ERROR_HINTS.get(kind, ERROR_HINTS[ErrorKind.UNKNOWN])
    detail = detail.strip().splitlines()[0] if detail.strip() else ""
    if detail:
        if len(detail) > _DETAIL_MAX_CHARS:
            detail = detail[:_DETAIL_MAX_CHARS] + "..."
        message += f"\nDetails: {detail}"
    return message


class RequestRegistry:
    """At most one active request per slot."""

    def __init__(self) -> None:
        self._active: dict[str, tuple[PendingRequest, asyncio.Task]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def pending(self, slot: str) -> PendingRequest | None:
        entry = self._active.get(slot)
        if entry is None or entry[1].done():
            return None
        return entry[0]

    async def cancel(self, slot: str, *, by_user: bool = True) -> bool:
        """Cancel the request in ``slot`` and wait until it has unwound.

        Returns True if a request was actually running.
        """
        entry = self._active.get(slot)
        if entry is None:
            return False
        request, task = entry
        if task.done():
            return False
        request.canceled_by_user = by_user
        task.cancel()
        await asyncio.wait({task})
        return True

    async def cancel_all(self) -> bool:
        results = [await self.cancel(slot) for slot in list(self._active)]
        return any(results)

    async def run(
        self,
        slot: str,
        request: PendingRequest,
        factory: Callable[[], Coroutine[Any, Any, PipelineOutcome]],
    ) -> PipelineOutcome:
        """Run ``factory()`` as the slot's request.

        Raises:
            RequestCanceled: If the request was canceled from elsewhere.
        """
        # Held until the new task is registered so overlapping callers queue up
        async with self._locks.setdefault(slot, asyncio.Lock()):
            if await self.cancel(slot, by_user=False):
                logger.info("Superseded the previous %s request", slot)
            task = asyncio.create_task(factory())
            self._active[slot] = (request, task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise RequestCanceled(request) from None
        finally:
            if self._active.get(slot, (None, None))[1] is task:
                del self._active[slot]


class Orchestrator:
    """Decides which pipeline to run and drives it to a terminal outcome.

    Owns the conversation state of the current question session. Nothing
    here is persisted; a new initial-question run starts a fresh session.
    """

    def __init__(
        self,
        settings: AppSettings,
        store: ScreenshotStore,
        config_store: ConfigStore,
        providers: ProviderRegistry,
        ocr: OcrExtractor,
        sink: PresentationSink,
        retry_policy: RetryPolicy | None = None,
        parse: Callable[[str, str], StructuredAnswer] = parse_response,
    ) -> None:
        self._settings = settings
        self._store = store
        self._config_store = config_store
        self._providers = providers
        self._ocr = ocr
        self._sink = sink
        self._retry = retry_policy or RetryPolicy.from_config(settings.retry)
        self._parse = parse
        self._requests = RequestRegistry()
        self._view = VIEW_QUEUE
        self._session = 0
        self.conversation: list[ConversationTurn] = []
        self.last_response = ""

    # --- state -----------------------------------------------------------

    @property
    def view(self) -> str:
        return self._view

    def set_view(self, view: str) -> None:
        self._view = view
        self._sink.view_changed(view)

    def reset_conversation(self) -> None:
        self.conversation = []
        self.last_response = ""

    def pending(self, slot: str) -> PendingRequest | None:
        return self._requests.pending(slot)

    def _progress(self, message: str, progress: int, is_error: bool = False) -> None:
        self._sink.progress(ProgressEvent(message=message, progress=progress, is_error=is_error))

    # --- entry points ----------------------------------------------------

    async def process_screenshots(self) -> PipelineOutcome:
        """Run whichever pipeline the queues and the current view call for.

        A non-empty main queue always means a new question, even mid-debug.
        """
        if self._store.list_main():
            return await self.run_initial()
        if self._view == VIEW_SOLUTIONS and self._store.list_extra():
            return await self.run_debug()
        logger.info(NOTHING_TO_PROCESS)
        self._progress(NOTHING_TO_PROCESS, 0)
        return PipelineOutcome(status="noop", message=NOTHING_TO_PROCESS)

    async def run_initial(self) -> PipelineOutcome:
        self.set_view(VIEW_QUEUE)
        request = PendingRequest(slot=SLOT_INITIAL, provider="", model="", prompt="")
        return await self._run_slot(SLOT_INITIAL, request, lambda: self._initial_pipeline(request))

    async def run_debug(self) -> PipelineOutcome:
        if not self._store.list_extra():
            return self._fail(SLOT_DEBUG, PipelineError(ErrorKind.NO_SCREENSHOTS, NO_ERROR_SCREENSHOTS))
        request = PendingRequest(slot=SLOT_DEBUG, provider="", model="", prompt="")
        return await self._run_slot(SLOT_DEBUG, request, lambda: self._debug_pipeline(request))

    async def cancel(self, slot: str) -> bool:
        return await self._requests.cancel(slot)

    async def cancel_ongoing_requests(self) -> bool:
        return await self._requests.cancel_all()

    async def reset(self) -> None:
        """Cancel everything, clear both queues and the session, back to the queue view."""
        await self.cancel_ongoing_requests()
        self._store.clear_all()
        self.reset_conversation()
        self._session += 1
        self.set_view(VIEW_QUEUE)

    # --- pipelines -------------------------------------------------------

    async def _run_slot(
        self,
        slot: str,
        request: PendingRequest,
        factory: Callable[[], Coroutine[Any, Any, PipelineOutcome]],
    ) -> PipelineOutcome:
        try:
            return await self._requests.run(slot, request, factory)
        except RequestCanceled:
            logger.info("%s processing canceled (by user: %s)", slot, request.canceled_by_user)
            self._progress(CANCELED_MESSAGE, 0)
            self._sink.processing_canceled(slot)
            return PipelineOutcome(status="canceled", slot=slot, message=CANCELED_MESSAGE)

    def _resolve(self) -> tuple[UserConfig, AIProvider]:
        config = self._config_store.load()
        return config, self._providers.get(config.provider)

    def _read_images(self, paths) -> list[bytes]:
        try:
            return [self._store.read_bytes(p) for p in paths]
        except OSError as exc:
            raise PipelineError(ErrorKind.NO_SCREENSHOTS, f"Failed to load screenshot data: {exc}") from exc

    async def _ocr_text(self, images: list[bytes]) -> str:
        raw = await self._ocr.extract_text_from_multiple(images)
        text = clean_ocr_text(raw, self._settings.ocr.max_chars)
        if not text:
            raise PipelineError(ErrorKind.OCR_FAILED, "No text found in screenshots")
        return text

    def _initial_prompt(self, language: str) -> str:
        prompts = self._settings.prompts
        system = prompts.initial.format(language=language, language_title=language.title())
        return f"{system.rstrip()}\n\n{prompts.screenshots_hint}"

    async def _call(
        self,
        request: PendingRequest,
        provider: AIProvider,
        prompt: str,
        images: list[bytes],
        history: list[ConversationTurn],
        stage: str,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        request.provider = provider.name()
        request.model = provider.model_string(stage)
        request.prompt = prompt
        request.image_count = len(images)
        logger.info(
            "%s request: %s/%s, %d image(s), %d history turn(s)",
            request.slot, request.provider, request.model, len(images), len(history),
        )
        return await self._retry.run(
            lambda: provider.complete(prompt, images, history, stage, max_tokens),
            label=f"{request.provider} {stage}",
        )

    async def _initial_pipeline(self, request: PendingRequest) -> PipelineOutcome:
        self.reset_conversation()
        self._session += 1
        try:
            paths = existing_paths(self._store.list_main())
            if not paths:
                raise PipelineError(ErrorKind.NO_SCREENSHOTS, "Screenshot files don't exist on disk")

            config, provider = self._resolve()
            fast = config.mode == "text" or not provider.supports_images

            self._progress("Reading screenshots...", 10)
            images = self._read_images(paths)

            if fast:
                self._progress("Extracting text from screenshots...", 30)
                question_text = await self._ocr_text(images)
                prompt = self._settings.prompts.fast_text.format(question_text=question_text)
                provider_cfg = self._settings.providers[provider.name()]
                self._progress("Generating answer...", 60)
                response = await self._call(
                    request, provider, prompt, [], [], "extraction", provider_cfg.fast_max_tokens
                )
            else:
                self._progress("Analyzing screenshots...", 30)
                prompt = self._initial_prompt(config.language)
                self._progress("Generating solution...", 60)
                response = await self._call(request, provider, prompt, images, [], "solution")
        except (ProviderError, PipelineError, OcrError, ValueError) as exc:
            return self._fail(SLOT_INITIAL, exc)

        text = response.content
        self.conversation.append(ConversationTurn("user", self._settings.prompts.history_marker))
        self.conversation.append(ConversationTurn("assistant", text))
        self.last_response = text
        answer = self._parse(text, config.language)

        # A new question discards stale debugging captures too
        self._store.clear_main()
        self._store.clear_extra()
        self._progress("Complete!", 100)
        self.set_view(VIEW_SOLUTIONS)
        self._sink.solution_ready(answer)
        logger.info("Solution ready: %s via %s/%s", answer.variant, response.provider, response.model)
        return PipelineOutcome(status="success", slot=SLOT_INITIAL, answer=answer, response=response)

    async def _debug_pipeline(self, request: PendingRequest) -> PipelineOutcome:
        session = self._session
        try:
            paths = existing_paths(self._store.list_extra())
            if not paths:
                raise PipelineError(ErrorKind.NO_SCREENSHOTS, NO_ERROR_SCREENSHOTS)

            config, provider = self._resolve()
            self._progress("Analyzing errors...", 30)
            images = self._read_images(paths)

            prompts = self._settings.prompts
            prompt = prompts.debug.format(last_response=self.last_response, language=config.language)
            history: list[ConversationTurn] = []
            if self.last_response:
                history = [
                    ConversationTurn("user", prompts.history_marker),
                    ConversationTurn("assistant", self.last_response),
                ]

            if config.mode == "text" or not provider.supports_images:
                ocr_text = await self._ocr_text(images)
                prompt += prompts.debug_ocr_suffix.format(ocr_text=ocr_text)
                images = []

            self._progress("Fixing errors...", 60)
            response = await self._call(request, provider, prompt, images, history, "debugging")
        except (ProviderError, PipelineError, OcrError, ValueError) as exc:
            return self._fail(SLOT_DEBUG, exc)

        if session != self._session:
            logger.warning("Debug result belongs to a superseded question, discarding it")
            return PipelineOutcome(status="canceled", slot=SLOT_DEBUG, message="Superseded by a new question")

        text = response.content
        self.conversation.append(ConversationTurn("user", prompt))
        self.conversation.append(ConversationTurn("assistant", text))
        self.last_response = text
        answer = self._parse(text, config.language)

        self._store.clear_extra()
        self._progress("Fixed!", 100)
        self._sink.debug_ready(answer)
        logger.info("Debug result ready: %s via %s/%s", answer.variant, response.provider, response.model)
        return PipelineOutcome(status="success", slot=SLOT_DEBUG, answer=answer, response=response)

    def _fail(self, slot: str, exc: BaseException) -> PipelineOutcome:
        """Report a terminal failure. Only the initial slot rolls the view back."""
        kind = error_kind(exc)
        if isinstance(exc, PipelineError) and kind is ErrorKind.NO_SCREENSHOTS:
            message = str(exc)
        else:
            message = user_message(kind, str(exc))
        logger.error("%s processing failed (%s): %s", slot, kind.value, exc)
        if slot == SLOT_INITIAL:
            self.set_view(VIEW_QUEUE)
        self._progress(message.splitlines()[0], 0, is_error=True)
        self._sink.processing_failed(kind, message)
        return PipelineOutcome(status="failed", slot=slot, error_kind=kind, message=message)
