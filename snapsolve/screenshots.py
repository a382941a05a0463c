"""Screenshot queues: main (new question) and extra (error/debug captures)."""

import logging
import shutil
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = frozenset({".png", ".jpg", ".jpeg", ".webp", ".gif"})


def scan_directory(directory: Path) -> list[Path]:
    """Return all image files in ``directory``, sorted by mtime ascending (oldest first)."""
    files = [p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES]
    return sorted(files, key=lambda p: p.stat().st_mtime)


def existing_paths(paths: Iterable[Path]) -> list[Path]:
    """Drop references whose file no longer exists."""
    kept = []
    for path in paths:
        if path.exists():
            kept.append(path)
        else:
            logger.warning("Screenshot file does not exist: %s", path)
    return kept


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move a consumed screenshot to ``archive_dir`` with a timestamp prefix."""
    archive_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M%S")
    prefix = "FAILED_" if failed else ""
    dest = archive_dir / f"{prefix}{timestamp}_{file_path.name}"
    shutil.move(str(file_path), str(dest))
    return dest


class ScreenshotStore:
    """Two ordered queues of image paths.

    Each queue holds at most ``max_size`` entries; adding beyond that drops
    the oldest. Clearing only forgets the references, files stay on disk.
    """

    def __init__(self, max_size: int = 5) -> None:
        self.max_size = max_size
        self._main: list[Path] = []
        self._extra: list[Path] = []

    def _queue(self, extra: bool) -> list[Path]:
        return self._extra if extra else self._main

    def list_main(self) -> list[Path]:
        return list(self._main)

    def list_extra(self) -> list[Path]:
        return list(self._extra)

    def add(self, path: Path, *, extra: bool = False) -> None:
        queue = self._queue(extra)
        queue.append(Path(path))
        while len(queue) > self.max_size:
            dropped = queue.pop(0)
            logger.debug("Queue full, dropped oldest screenshot %s", dropped)

    def remove_last(self, *, extra: bool = False) -> Path | None:
        queue = self._queue(extra)
        return queue.pop() if queue else None

    def clear_main(self) -> None:
        self._main.clear()

    def clear_extra(self) -> None:
        self._extra.clear()

    def clear_all(self) -> None:
        self.clear_main()
        self.clear_extra()

    def read_bytes(self, path: Path) -> bytes:
        return Path(path).read_bytes()
