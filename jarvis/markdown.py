"""Tiny lexer for the bold-only markdown subset the assistant emits.

Text is split into a flat list of spans. An opening ``**`` without a matching
close is kept as literal text together with everything after it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List


BOLD_MARKER = "**"


class SpanKind(str, Enum):
    TEXT = "text"
    BOLD = "bold"


@dataclass
class Span:
    kind: SpanKind
    content: str


def _push(spans: List[Span], kind: SpanKind, content: str) -> None:
    if not content:
        return
    if spans and spans[-1].kind == kind:
        spans[-1].content += content
    else:
        spans.append(Span(kind, content))


def segment_markdown(text: str) -> List[Span]:
    if not text:
        return []
    spans: List[Span] = []
    index = 0
    while index < len(text):
        start = text.find(BOLD_MARKER, index)
        if start == -1:
            _push(spans, SpanKind.TEXT, text[index:])
            break
        _push(spans, SpanKind.TEXT, text[index:start])
        end = text.find(BOLD_MARKER, start + len(BOLD_MARKER))
        if end == -1:
            _push(spans, SpanKind.TEXT, text[start:])
            break
        _push(spans, SpanKind.BOLD, text[start + len(BOLD_MARKER):end])
        index = end + len(BOLD_MARKER)
    return spans


def plain_text(spans: List[Span]) -> str:
    return "".join(span.content for span in spans)


def plain_length(spans: List[Span]) -> int:
    return sum(len(span.content) for span in spans)


def strip_markdown(text: str) -> str:
    return plain_text(segment_markdown(text))


def wrap_bold(text: str) -> str:
    return f"{BOLD_MARKER}{text}{BOLD_MARKER}"
