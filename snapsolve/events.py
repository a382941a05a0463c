"""Presentation sink: where the orchestrator reports progress and results."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from snapsolve.models import ErrorKind, ProgressEvent, StructuredAnswer


class PresentationSink(ABC):
    """Receiver for pipeline events. Implementations must not block."""

    @abstractmethod
    def progress(self, event: ProgressEvent) -> None: ...

    @abstractmethod
    def solution_ready(self, answer: StructuredAnswer) -> None: ...

    @abstractmethod
    def debug_ready(self, answer: StructuredAnswer) -> None: ...

    @abstractmethod
    def processing_failed(self, kind: ErrorKind, message: str) -> None: ...

    @abstractmethod
    def view_changed(self, view: str) -> None: ...

    def processing_canceled(self, slot: str) -> None:
        """Called when the user aborts a run. No error is shown by default."""


@dataclass
class RecordingSink(PresentationSink):
    """Keeps every event as (name, payload) in arrival order."""

    events: list[tuple[str, object]] = field(default_factory=list)

    def progress(self, event: ProgressEvent) -> None:
        self.events.append(("progress", event))

    def solution_ready(self, answer: StructuredAnswer) -> None:
        self.events.append(("solution_ready", answer))

    def debug_ready(self, answer: StructuredAnswer) -> None:
        self.events.append(("debug_ready", answer))

    def processing_failed(self, kind: ErrorKind, message: str) -> None:
        self.events.append(("processing_failed", (kind, message)))

    def view_changed(self, view: str) -> None:
        self.events.append(("view_changed", view))

    def processing_canceled(self, slot: str) -> None:
        self.events.append(("processing_canceled", slot))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[object]:
        return [payload for event_name, payload in self.events if event_name == name]
