"""Tests for snapsolve/orchestrator.py."""

import asyncio

import pytest

from snapsolve.models import (
    SLOT_DEBUG,
    SLOT_INITIAL,
    VIEW_QUEUE,
    VIEW_SOLUTIONS,
    CodeSolution,
    ConversationTurn,
    ErrorKind,
    MultipleChoice,
    PendingRequest,
)
from snapsolve.orchestrator import (
    Orchestrator,
    PipelineError,
    RequestCanceled,
    RequestRegistry,
    error_kind,
    user_message,
)
from snapsolve.ocr import OcrError
from snapsolve.providers.base import ProviderError
from tests.conftest import MockProvider, StaticRegistry, make_response


def _queue(store, paths, extra=False):
    for path in paths:
        store.add(path, extra=extra)


async def _hang(*args, **kwargs):
    await asyncio.Event().wait()


# --- helpers ---------------------------------------------------------------


def test_user_message_appends_short_detail():
    message = user_message(ErrorKind.RATE_LIMITED, "429 Too Many Requests\nretry-after: 30")
    assert message.startswith("Rate limit exceeded")
    assert message.endswith("Details: 429 Too Many Requests")


def test_user_message_truncates_long_detail():
    message = user_message(ErrorKind.UNKNOWN, "x" * 500)
    detail = message.split("Details: ", 1)[1]
    assert detail == "x" * 200 + "..."


def test_user_message_without_detail():
    assert "Details" not in user_message(ErrorKind.INVALID_CREDENTIALS)


def test_error_kind_mapping():
    assert error_kind(ProviderError("openai", "boom", ErrorKind.RATE_LIMITED)) is ErrorKind.RATE_LIMITED
    assert error_kind(OcrError("no tesseract")) is ErrorKind.OCR_FAILED
    assert error_kind(PipelineError(ErrorKind.NO_SCREENSHOTS, "none")) is ErrorKind.NO_SCREENSHOTS
    assert error_kind(RuntimeError("?")) is ErrorKind.UNKNOWN


# --- pipeline selection ----------------------------------------------------


async def test_nothing_to_process_is_noop(orchestrator, mock_provider, sink):
    outcome = await orchestrator.process_screenshots()
    assert outcome.status == "noop"
    mock_provider.complete.assert_not_awaited()
    assert "processing_failed" not in sink.names()


async def test_extra_queue_ignored_in_queue_view(orchestrator, screenshot_store, error_screenshot, mock_provider):
    _queue(screenshot_store, [error_screenshot], extra=True)
    outcome = await orchestrator.process_screenshots()
    assert outcome.status == "noop"
    mock_provider.complete.assert_not_awaited()


async def test_main_queue_forces_queue_view_and_initial_pipeline(
    orchestrator, screenshot_store, screenshot_files, error_screenshot, mock_provider, sink
):
    orchestrator.set_view(VIEW_SOLUTIONS)
    sink.events.clear()
    _queue(screenshot_store, screenshot_files)
    _queue(screenshot_store, [error_screenshot], extra=True)

    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    assert outcome.slot == SLOT_INITIAL
    assert sink.of("view_changed")[0] == VIEW_QUEUE
    assert mock_provider.complete.await_args.args[3] == "solution"


# --- initial pipeline ------------------------------------------------------


async def test_initial_success_image_mode(orchestrator, screenshot_store, screenshot_files, mock_provider, sink):
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    assert isinstance(outcome.answer, MultipleChoice)
    assert outcome.answer.answer_label == "B"
    assert outcome.answer.answer_value == "4"
    assert outcome.answer.reasoning == "2 + 2 is 4."

    prompt, images, history, stage, max_tokens = mock_provider.complete.await_args.args
    assert "Analyze these screenshots and provide the solution:" in prompt
    assert images == [p.read_bytes() for p in screenshot_files]
    assert history == []
    assert stage == "solution"
    assert max_tokens is None

    assert screenshot_store.list_main() == []
    assert orchestrator.view == VIEW_SOLUTIONS
    assert sink.of("solution_ready") == [outcome.answer]
    assert sink.of("progress")[-1].progress == 100


async def test_initial_success_records_conversation(orchestrator, screenshot_store, screenshot_files, settings):
    _queue(screenshot_store, screenshot_files)
    await orchestrator.process_screenshots()
    assert orchestrator.conversation == [
        ConversationTurn("user", settings.prompts.history_marker),
        ConversationTurn("assistant", "```markdown\n2 + 2 is 4.\n```\nFINAL ANSWER: B 4"),
    ]
    assert orchestrator.last_response.endswith("FINAL ANSWER: B 4")


async def test_initial_success_clears_extra_queue(
    orchestrator, screenshot_store, screenshot_files, error_screenshot
):
    _queue(screenshot_store, screenshot_files)
    _queue(screenshot_store, [error_screenshot], extra=True)
    await orchestrator.process_screenshots()
    assert screenshot_store.list_extra() == []


async def test_initial_prompt_uses_configured_language(
    orchestrator, config_store, screenshot_store, screenshot_files, mock_provider
):
    config_store.update(language="javascript")
    mock_provider.complete.return_value = make_response("Main concept: map\n```javascript\nconst a = 1;\n```")
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    prompt = mock_provider.complete.await_args.args[0]
    assert "```javascript" in prompt
    assert "Javascript QUESTION" in prompt
    assert isinstance(outcome.answer, CodeSolution)
    assert outcome.answer.code == "const a = 1;"


async def test_conversation_reset_when_new_question_starts(
    orchestrator, screenshot_store, screenshot_files, mock_provider
):
    orchestrator.conversation = [ConversationTurn("user", "old"), ConversationTurn("assistant", "old answer")]
    orchestrator.last_response = "old answer"
    seen = {}

    async def capture(*args, **kwargs):
        seen["conversation"] = list(orchestrator.conversation)
        seen["last_response"] = orchestrator.last_response
        return make_response("plain answer")

    mock_provider.complete.side_effect = capture
    _queue(screenshot_store, screenshot_files)
    await orchestrator.process_screenshots()

    assert seen == {"conversation": [], "last_response": ""}


async def test_fast_text_mode_uses_ocr(
    orchestrator, config_store, screenshot_store, screenshot_files, mock_provider, mock_ocr, settings
):
    config_store.update(mode="text")
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    mock_ocr.extract_text_from_multiple.assert_awaited_once()
    prompt, images, history, stage, max_tokens = mock_provider.complete.await_args.args
    assert "What is 2 + 2?" in prompt
    assert images == []
    assert stage == "extraction"
    assert max_tokens == settings.providers["gemini"].fast_max_tokens


async def test_text_only_provider_forces_fast_text(
    settings, config_store, screenshot_store, screenshot_files, mock_ocr, sink, retry_policy
):
    groq = MockProvider("groq", supports_images=False)
    config_store.update(provider="groq")
    orchestrator = Orchestrator(
        settings, screenshot_store, config_store, StaticRegistry({"groq": groq}), mock_ocr, sink, retry_policy
    )
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    mock_ocr.extract_text_from_multiple.assert_awaited_once()
    assert groq.complete.await_args.args[1] == []


async def test_ocr_with_no_text_fails(
    orchestrator, config_store, screenshot_store, screenshot_files, mock_provider, mock_ocr, sink
):
    config_store.update(mode="text")
    mock_ocr.extract_text_from_multiple.return_value = "   \n  "
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.status == "failed"
    assert outcome.error_kind is ErrorKind.OCR_FAILED
    mock_provider.complete.assert_not_awaited()
    assert screenshot_store.list_main() == screenshot_files
    assert orchestrator.view == VIEW_QUEUE


async def test_ocr_engine_error_fails(orchestrator, config_store, screenshot_store, screenshot_files, mock_ocr):
    config_store.update(mode="text")
    mock_ocr.extract_text_from_multiple.side_effect = OcrError("Tesseract is not available")
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.error_kind is ErrorKind.OCR_FAILED
    assert "Tesseract is not available" in outcome.message


async def test_missing_screenshot_files_fail(orchestrator, screenshot_store, tmp_path, mock_provider):
    screenshot_store.add(tmp_path / "gone.png")
    outcome = await orchestrator.process_screenshots()
    assert outcome.error_kind is ErrorKind.NO_SCREENSHOTS
    mock_provider.complete.assert_not_awaited()


async def test_unconfigured_provider_fails_without_raising(
    settings, config_store, screenshot_store, screenshot_files, mock_ocr, sink, retry_policy
):
    orchestrator = Orchestrator(settings, screenshot_store, config_store, StaticRegistry({}), mock_ocr, sink, retry_policy)
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.error_kind is ErrorKind.NOT_CONFIGURED
    kind, message = sink.of("processing_failed")[0]
    assert kind is ErrorKind.NOT_CONFIGURED
    assert message.startswith("API key not configured")


async def test_initial_failure_keeps_queue_and_returns_to_queue_view(
    orchestrator, screenshot_store, screenshot_files, mock_provider, sink
):
    mock_provider.complete.side_effect = ProviderError("gemini", "413 Payload Too Large", ErrorKind.PAYLOAD_TOO_LARGE)
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.error_kind is ErrorKind.PAYLOAD_TOO_LARGE
    assert "Reduce input size" in outcome.message
    assert screenshot_store.list_main() == screenshot_files
    assert orchestrator.view == VIEW_QUEUE
    assert sink.of("progress")[-1].is_error
    assert "solution_ready" not in sink.names()


# --- retry -----------------------------------------------------------------


async def test_transient_errors_are_retried(orchestrator, screenshot_store, screenshot_files, mock_provider, no_sleep):
    transient = ProviderError("gemini", "503 Service Unavailable", ErrorKind.RETRYABLE_TRANSIENT)
    mock_provider.complete.side_effect = [transient, transient, make_response("FINAL ANSWER: C 9")]
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    assert outcome.answer.answer_label == "C"
    assert mock_provider.complete.await_count == 3
    assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]


async def test_retries_exhausted(orchestrator, screenshot_store, screenshot_files, mock_provider):
    mock_provider.complete.side_effect = ProviderError("gemini", "timed out", ErrorKind.RETRYABLE_TRANSIENT)
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.error_kind is ErrorKind.RETRYABLE_TRANSIENT
    assert mock_provider.complete.await_count == 3


async def test_invalid_credentials_not_retried(orchestrator, screenshot_store, screenshot_files, mock_provider):
    mock_provider.complete.side_effect = ProviderError("gemini", "401", ErrorKind.INVALID_CREDENTIALS)
    _queue(screenshot_store, screenshot_files)

    outcome = await orchestrator.process_screenshots()

    assert outcome.error_kind is ErrorKind.INVALID_CREDENTIALS
    assert outcome.message.startswith("Invalid API key")
    assert mock_provider.complete.await_count == 1


# --- debug pipeline --------------------------------------------------------


async def test_debug_after_solution(
    orchestrator, screenshot_store, screenshot_files, error_screenshot, mock_provider, sink, settings
):
    _queue(screenshot_store, screenshot_files)
    await orchestrator.process_screenshots()
    first_answer = orchestrator.last_response

    mock_provider.complete.return_value = make_response("Main concept: fix\n```python\nprint(4)\n```", stage="debugging")
    _queue(screenshot_store, [error_screenshot], extra=True)
    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    assert outcome.slot == SLOT_DEBUG
    prompt, images, history, stage, _ = mock_provider.complete.await_args.args
    assert first_answer in prompt
    assert images == [error_screenshot.read_bytes()]
    assert history == [
        ConversationTurn("user", settings.prompts.history_marker),
        ConversationTurn("assistant", first_answer),
    ]
    assert stage == "debugging"
    assert screenshot_store.list_extra() == []
    assert orchestrator.view == VIEW_SOLUTIONS
    assert isinstance(sink.of("debug_ready")[0], CodeSolution)
    assert len(orchestrator.conversation) == 4


async def test_debug_with_empty_extra_queue(orchestrator, mock_provider, sink):
    outcome = await orchestrator.run_debug()
    assert outcome.error_kind is ErrorKind.NO_SCREENSHOTS
    assert "no error screenshots" in outcome.message.lower()
    mock_provider.complete.assert_not_awaited()
    assert sink.of("processing_failed")[0][0] is ErrorKind.NO_SCREENSHOTS


async def test_debug_failure_leaves_view_alone(
    orchestrator, screenshot_store, screenshot_files, error_screenshot, mock_provider
):
    _queue(screenshot_store, screenshot_files)
    await orchestrator.process_screenshots()
    mock_provider.complete.side_effect = ProviderError("gemini", "429", ErrorKind.RATE_LIMITED)
    _queue(screenshot_store, [error_screenshot], extra=True)

    outcome = await orchestrator.process_screenshots()

    assert outcome.error_kind is ErrorKind.RATE_LIMITED
    assert orchestrator.view == VIEW_SOLUTIONS
    assert screenshot_store.list_extra() == [error_screenshot]


async def test_debug_on_text_only_provider_appends_ocr_text(
    settings, config_store, screenshot_store, error_screenshot, mock_ocr, sink, retry_policy
):
    groq = MockProvider("groq", supports_images=False)
    config_store.update(provider="groq")
    orchestrator = Orchestrator(
        settings, screenshot_store, config_store, StaticRegistry({"groq": groq}), mock_ocr, sink, retry_policy
    )
    orchestrator.set_view(VIEW_SOLUTIONS)
    orchestrator.last_response = "FINAL ANSWER: A 3"
    mock_ocr.extract_text_from_multiple.return_value = "NameError: name 'x' is not defined"
    _queue(screenshot_store, [error_screenshot], extra=True)

    outcome = await orchestrator.process_screenshots()

    assert outcome.ok
    prompt, images, *_ = groq.complete.await_args.args
    assert "Text read from the error screenshots" in prompt
    assert "NameError: name 'x' is not defined" in prompt
    assert images == []


# --- cancellation ----------------------------------------------------------


async def test_user_cancel_yields_canceled_outcome(
    orchestrator, screenshot_store, screenshot_files, mock_provider, sink
):
    started = asyncio.Event()

    async def hang(*args, **kwargs):
        started.set()
        await asyncio.Event().wait()

    mock_provider.complete.side_effect = hang
    _queue(screenshot_store, screenshot_files)

    task = asyncio.create_task(orchestrator.process_screenshots())
    await started.wait()
    request = orchestrator.pending(SLOT_INITIAL)
    assert request is not None
    assert request.image_count == 2

    assert await orchestrator.cancel_ongoing_requests() is True
    outcome = await task

    assert outcome.status == "canceled"
    assert request.canceled_by_user is True
    assert sink.of("processing_canceled") == [SLOT_INITIAL]
    assert "processing_failed" not in sink.names()
    assert screenshot_store.list_main() == screenshot_files
    assert orchestrator.conversation == []
    assert orchestrator.pending(SLOT_INITIAL) is None


async def test_new_request_supersedes_previous_in_same_slot(
    orchestrator, screenshot_store, screenshot_files, mock_provider
):
    started = asyncio.Event()
    calls = 0

    async def first_hangs(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            started.set()
            await asyncio.Event().wait()
        return make_response("FINAL ANSWER: D 16")

    mock_provider.complete.side_effect = first_hangs
    _queue(screenshot_store, screenshot_files)

    first = asyncio.create_task(orchestrator.process_screenshots())
    await started.wait()
    first_request = orchestrator.pending(SLOT_INITIAL)

    second = await orchestrator.process_screenshots()
    first_outcome = await first

    assert second.ok
    assert second.answer.answer_label == "D"
    assert first_outcome.status == "canceled"
    assert first_request.canceled_by_user is False


async def test_canceling_debug_slot_leaves_initial_running(
    orchestrator, screenshot_store, screenshot_files, mock_provider
):
    started = asyncio.Event()
    release = asyncio.Event()

    async def wait_for_release(*args, **kwargs):
        started.set()
        await release.wait()
        return make_response("FINAL ANSWER: A 1")

    mock_provider.complete.side_effect = wait_for_release
    _queue(screenshot_store, screenshot_files)

    task = asyncio.create_task(orchestrator.process_screenshots())
    await started.wait()

    assert await orchestrator.cancel(SLOT_DEBUG) is False
    release.set()
    outcome = await task

    assert outcome.ok


async def test_reset_clears_everything(
    orchestrator, screenshot_store, screenshot_files, error_screenshot, sink
):
    _queue(screenshot_store, screenshot_files)
    await orchestrator.process_screenshots()
    _queue(screenshot_store, [error_screenshot], extra=True)

    await orchestrator.reset()

    assert screenshot_store.list_main() == []
    assert screenshot_store.list_extra() == []
    assert orchestrator.conversation == []
    assert orchestrator.last_response == ""
    assert orchestrator.view == VIEW_QUEUE
    assert sink.of("view_changed")[-1] == VIEW_QUEUE


# --- request registry ------------------------------------------------------


async def test_registry_run_returns_result():
    registry = RequestRegistry()
    request = _request(SLOT_INITIAL)

    async def work():
        return "done"

    assert await registry.run(SLOT_INITIAL, request, work) == "done"
    assert registry.pending(SLOT_INITIAL) is None


async def test_registry_cancel_raises_request_canceled():
    registry = RequestRegistry()
    request = _request(SLOT_DEBUG)
    task = asyncio.create_task(registry.run(SLOT_DEBUG, request, _hang))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert await registry.cancel(SLOT_DEBUG) is True
    with pytest.raises(RequestCanceled):
        await task
    assert request.canceled_by_user is True


async def test_registry_overlapping_runs_keep_one_request_per_slot():
    registry = RequestRegistry()
    running = 0
    peak = 0

    def work(name):
        async def run():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            try:
                await asyncio.sleep(0.05)
            finally:
                running -= 1
            return name
        return run

    first = asyncio.create_task(registry.run(SLOT_INITIAL, _request(SLOT_INITIAL), work("r0")))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(registry.run(SLOT_INITIAL, _request(SLOT_INITIAL), work("r1")))
    third = asyncio.create_task(registry.run(SLOT_INITIAL, _request(SLOT_INITIAL), work("r2")))

    results = await asyncio.gather(first, second, third, return_exceptions=True)

    assert peak == 1
    assert isinstance(results[0], RequestCanceled)
    assert isinstance(results[1], RequestCanceled)
    assert results[2] == "r2"
    assert registry.pending(SLOT_INITIAL) is None


async def test_registry_cancel_idle_slot():
    assert await RequestRegistry().cancel(SLOT_INITIAL) is False


async def test_registry_outer_cancellation_propagates():
    registry = RequestRegistry()
    task = asyncio.create_task(registry.run(SLOT_INITIAL, _request(SLOT_INITIAL), _hang))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def _request(slot):
    return PendingRequest(slot=slot, provider="mock", model="mock-model", prompt="p")

