"""Fast text extraction from screenshots via Tesseract, tuned for speed over accuracy."""

import asyncio
import io
import logging
import re
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

import pytesseract
from PIL import Image, UnidentifiedImageError

from config.config_loader import OcrConfig

logger = logging.getLogger(__name__)

# Dictionary and frequency corrections cost time and rarely help on UI text
_DISABLED_PARAMS = (
    "load_system_dawg",
    "load_freq_dawg",
    "load_unambig_dawg",
    "load_punc_dawg",
    "load_number_dawg",
    "load_bigram_dawg",
    "language_model_penalty_non_dict_word",
    "language_model_penalty_non_freq_dict_word",
)

_JSON_HOSTILE_RE = re.compile(r"[\"\\{}`]")
_HSPACE_RE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES_RE = re.compile(r"\s*\n\s*")


class OcrError(Exception):
    """Raised when the OCR engine is missing or cannot read an image."""


def clean_ocr_text(text: str, max_chars: int = 4000) -> str:
    """Normalize OCR output for embedding in a prompt.

    Drops non-ASCII characters and JSON-hostile punctuation, collapses runs
    of whitespace (one space within a line, one newline between lines) and
    truncates to ``max_chars``.
    """
    text = text.encode("ascii", "ignore").decode("ascii")
    text = _JSON_HOSTILE_RE.sub("", text)
    text = _HSPACE_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n", text).strip()
    if len(text) > max_chars:
        text = text[:max_chars].rstrip()
    return text


class OcrExtractor:
    """One long-lived, lazily started Tesseract worker.

    Extractions are serialized: the worker is a single thread and calls
    queue behind an asyncio.Lock.
    """

    def __init__(self, config: OcrConfig | None = None) -> None:
        self._config = config or OcrConfig()
        self._executor: ThreadPoolExecutor | None = None
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._executor is not None

    def tesseract_config(self) -> str:
        params = " ".join(f"-c {name}=0" for name in _DISABLED_PARAMS)
        return f"--oem {self._config.engine_mode} --psm {self._config.page_seg_mode} {params}"

    async def _ensure_worker(self) -> ThreadPoolExecutor:
        if self._executor is not None:
            return self._executor
        logger.info("Initializing Tesseract OCR worker...")
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ocr")
        try:
            version = await asyncio.get_running_loop().run_in_executor(
                executor, pytesseract.get_tesseract_version
            )
        except (pytesseract.TesseractNotFoundError, OSError) as exc:
            executor.shutdown(wait=False)
            raise OcrError(f"Tesseract is not available: {exc}") from exc
        self._executor = executor
        logger.info("OCR worker initialized (tesseract %s, %s)", version, self.tesseract_config())
        return executor

    def _recognize(self, data: bytes) -> str:
        with Image.open(io.BytesIO(data)) as image:
            text = pytesseract.image_to_string(
                image,
                lang=self._config.lang,
                config=self.tesseract_config(),
            )
        return text.strip()

    async def extract_text(self, image: bytes) -> str:
        """Extract raw text from one image."""
        async with self._lock:
            executor = await self._ensure_worker()
            start = time.monotonic()
            try:
                text = await asyncio.get_running_loop().run_in_executor(executor, self._recognize, image)
            except (pytesseract.TesseractError, UnidentifiedImageError, OSError) as exc:
                raise OcrError(f"OCR extraction failed: {exc}") from exc
            logger.info("OCR completed in %.2fs, %d characters", time.monotonic() - start, len(text))
            return text

    async def extract_text_from_multiple(self, images: Sequence[bytes]) -> str:
        """Extract each image in order and join the results with the separator."""
        texts = [await self.extract_text(image) for image in images]
        return self._config.separator.join(texts)

    def terminate(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.info("OCR worker terminated")
