"""Rich console rendering of pipeline progress and structured answers."""

import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.text import Text

from snapsolve.events import PresentationSink
from snapsolve.models import (
    CodeSolution,
    ErrorKind,
    McqKind,
    MultipleChoice,
    PlainText,
    ProgressEvent,
    StructuredAnswer,
    WebMarkup,
)

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _mcq_title(answer: MultipleChoice) -> str:
    if answer.kind is McqKind.NOT_FOUND:
        return "[bold yellow]Answer not found[/bold yellow]"
    if answer.kind is McqKind.FILL_BLANK:
        return "[bold green]Answer[/bold green]"
    label = "Answers" if answer.kind is McqKind.MULTI else "Answer"
    return f"[bold green]{label}: {answer.answer_label}[/bold green]"


def render_answer(answer: StructuredAnswer, target: Console | None = None) -> None:
    """Print one structured answer, laid out per variant."""
    out = target or console
    if isinstance(answer, MultipleChoice):
        body = answer.answer_value or answer.answer_label
        out.print(Panel(Text(body), title=_mcq_title(answer), border_style="green"))
        if answer.reasoning:
            out.print(Markdown(answer.reasoning))
    elif isinstance(answer, CodeSolution):
        if answer.concept:
            out.print(Text(f"Main concept: {answer.concept}", style="bold cyan"))
        out.print(
            Panel(
                Syntax(answer.code, answer.language or "text", line_numbers=True, word_wrap=True),
                title=f"[bold]{answer.language}[/bold]",
                border_style="dim",
            )
        )
    elif isinstance(answer, WebMarkup):
        out.print(Panel(Syntax(answer.html, "html", word_wrap=True), title="[bold]HTML[/bold]", border_style="dim"))
        if answer.css:
            out.print(Panel(Syntax(answer.css, "css", word_wrap=True), title="[bold]CSS[/bold]", border_style="dim"))
    elif isinstance(answer, PlainText):
        out.print(Markdown(answer.text))
    else:
        logger.warning("Unknown answer type: %r", answer)


class ConsoleSink(PresentationSink):
    """Prints every pipeline event to a rich console."""

    def __init__(self, target: Console | None = None) -> None:
        self.console = target or console

    def progress(self, event: ProgressEvent) -> None:
        if event.is_error:
            return
        self.console.print(f"[dim]{event.progress:>3}%[/dim] {escape(event.message)}")

    def solution_ready(self, answer: StructuredAnswer) -> None:
        self.console.print(Rule("[bold green]Solution[/bold green]"))
        render_answer(answer, self.console)

    def debug_ready(self, answer: StructuredAnswer) -> None:
        self.console.print(Rule("[bold cyan]Debug[/bold cyan]"))
        render_answer(answer, self.console)

    def processing_failed(self, kind: ErrorKind, message: str) -> None:
        self.console.print(
            Panel(Text(message), title=f"[bold red]Error ({kind.value})[/bold red]", border_style="red")
        )

    def view_changed(self, view: str) -> None:
        logger.debug("View changed to %s", view)

    def processing_canceled(self, slot: str) -> None:
        self.console.print(f"[yellow]Canceled[/yellow] {slot} processing")
