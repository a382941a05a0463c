"""Classify a raw completion into one StructuredAnswer variant.

Pure and deterministic: no I/O, no logging, never raises for string input.
Classification order, first match wins:

1. multiple choice  -- a ``FINAL ANSWER:`` marker or a legacy ``option N)`` line
2. web markup       -- an ``<html>`` or ``<!DOCTYPE html>`` token
3. code solution    -- a fenced block tagged with the target language
4. plain text       -- everything else
"""

import re

from snapsolve.models import (
    ANSWER_NOT_FOUND,
    CodeSolution,
    McqKind,
    MultipleChoice,
    PlainText,
    StructuredAnswer,
    WebMarkup,
)

_FINAL_ANSWER_RE = re.compile(
    r"FINAL[ \t]+ANSWER[ \t]*\**[ \t]*:[ \t]*\**[ \t]*(?P<body>[^\n]*)",
    re.IGNORECASE,
)
_LEGACY_OPTION_RE = re.compile(
    r"option\s+(?P<number>\d+)\s*(?:/\s*(?P<letter>[A-Za-z]))?\s*\)[ \t]*(?P<text>[^\n]*)",
    re.IGNORECASE,
)
_LABEL = r"\(?[A-H]\)?"
_LABELS_RE = re.compile(
    rf"^(?P<labels>{_LABEL}(?:\s*,\s*{_LABEL})*)(?:[.:)]|(?=\s)|$)\s*(?P<value>.*)$",
    re.DOTALL,
)
_HTML_START_RE = re.compile(r"<!DOCTYPE\s+html[^>]*>|<html[\s>]", re.IGNORECASE)
_HTML_END_RE = re.compile(r"</html\s*>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>(?P<css>.*?)</style\s*>", re.IGNORECASE | re.DOTALL)
_CONCEPT_RE = re.compile(r"Main\s+concept\s*:\s*(?P<concept>[^\n`]+)", re.IGNORECASE)
_FENCE_LINE_RE = re.compile(r"^\s*```[\w+#.-]*\s*$", re.MULTILINE)

_REASONING_TAGS = ("markdown", "md", "reasoning", "explanation")
_TEXT_TAGS = ("text", "txt", "plaintext")

_LANGUAGE_ALIASES = {
    "python": ("python", "py", "python3"),
    "javascript": ("javascript", "js", "jsx"),
    "typescript": ("typescript", "ts", "tsx"),
    "c++": ("cpp", "c++", "cxx"),
    "cpp": ("cpp", "c++", "cxx"),
    "c#": ("csharp", "cs", "c#"),
    "csharp": ("csharp", "cs", "c#"),
    "golang": ("go", "golang"),
    "go": ("go", "golang"),
    "kotlin": ("kotlin", "kt"),
    "ruby": ("ruby", "rb"),
    "rust": ("rust", "rs"),
    "shell": ("bash", "sh", "shell"),
    "bash": ("bash", "sh", "shell"),
}


def _fenced_block(text: str, tags: tuple[str, ...]) -> str | None:
    """Contents of the first fenced block tagged with one of ``tags``.

    An unterminated block runs to the end of the text.
    """
    alternatives = "|".join(re.escape(t) for t in tags)
    pattern = re.compile(
        rf"```[ \t]*(?:{alternatives})[ \t]*\n(?P<body>.*?)(?:```|\Z)",
        re.IGNORECASE | re.DOTALL,
    )
    match = pattern.search(text)
    return match.group("body").strip() if match else None


def language_tags(language: str) -> tuple[str, ...]:
    key = (language or "python").strip().lower()
    return _LANGUAGE_ALIASES.get(key, (key,))


def _final_answer_body(text: str) -> str | None:
    """Body of the last FINAL ANSWER line, or None when there is no marker."""
    matches = list(_FINAL_ANSWER_RE.finditer(text))
    if not matches:
        return None
    return matches[-1].group("body").strip().strip("*").strip()


def has_mcq_marker(text: str) -> bool:
    return bool(_FINAL_ANSWER_RE.search(text) or _LEGACY_OPTION_RE.search(text))


def has_html(text: str) -> bool:
    return bool(_HTML_START_RE.search(text))


def parse_mcq(text: str) -> MultipleChoice:
    reasoning = _fenced_block(text, _REASONING_TAGS) or ""

    body = _final_answer_body(text)
    if body:
        match = _LABELS_RE.match(body)
        if match:
            labels = tuple(re.findall(r"[A-H]", match.group("labels")))
            value = match.group("value").strip().lstrip(":-").strip()
            return MultipleChoice(
                answer_label=", ".join(labels),
                answer_value=value,
                reasoning=reasoning,
                raw_text=text,
                kind=McqKind.MULTI if len(labels) > 1 else McqKind.SINGLE,
                labels=labels,
            )
        return MultipleChoice(
            answer_label="",
            answer_value=body,
            reasoning=reasoning,
            raw_text=text,
            kind=McqKind.FILL_BLANK,
        )

    legacy = _LEGACY_OPTION_RE.search(text)
    if legacy:
        letter = (legacy.group("letter") or "").upper()
        return MultipleChoice(
            answer_label=letter or legacy.group("number"),
            answer_value=legacy.group("text").strip(),
            reasoning=reasoning,
            raw_text=text,
            kind=McqKind.SINGLE,
            labels=(letter,) if letter else (),
            option_number=int(legacy.group("number")),
        )

    return MultipleChoice(
        answer_label=ANSWER_NOT_FOUND,
        answer_value="",
        reasoning=reasoning,
        raw_text=text,
        kind=McqKind.NOT_FOUND,
    )


def _css_after(tail: str) -> str:
    fenced = _fenced_block(tail, ("css",))
    if fenced is not None:
        return fenced
    return _FENCE_LINE_RE.sub("", tail).strip()


def parse_web(text: str) -> WebMarkup:
    start = _HTML_START_RE.search(text)
    if start is None:
        html, tail = "", text
    else:
        end = _HTML_END_RE.search(text, start.start())
        if end is None:
            html, tail = text[start.start():].strip(), ""
        else:
            html, tail = text[start.start():end.end()], text[end.end():]

    css = _css_after(tail)
    if not css:
        style = _STYLE_RE.search(text)
        css = style.group("css").strip() if style else ""
    return WebMarkup(html=html, css=css, raw_text=text)


def parse_code(text: str, language: str = "python") -> CodeSolution:
    code = _fenced_block(text, language_tags(language))
    concept = _CONCEPT_RE.search(text)
    return CodeSolution(
        code=code if code is not None else text.strip(),
        concept=concept.group("concept").strip() if concept else "",
        raw_text=text,
        language=language,
    )


def parse_text(text: str) -> PlainText:
    block = _fenced_block(text, _TEXT_TAGS)
    return PlainText(text=block if block is not None else text.strip())


def parse_response(text: str, language: str = "python") -> StructuredAnswer:
    """Classify ``text`` and extract its fields. See module docstring for the order."""
    text = text or ""
    if has_mcq_marker(text):
        return parse_mcq(text)
    if has_html(text):
        return parse_web(text)
    if _fenced_block(text, language_tags(language)) is not None:
        return parse_code(text, language)
    return parse_text(text)
