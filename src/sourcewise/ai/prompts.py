"""Prompt templates and citation parsing for source-grounded chat.

The model is asked to cite inline as ``[Source N]`` and to close its answer
with a machine-readable block::

    ---CITATIONS---
    [Source 1]: "exact quote or paraphrase"
    ---END CITATIONS---

:func:`parse_citations` strips that block from the answer and turns it into
:class:`~sourcewise.ai.ai_types.Citation` records.
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

from .ai_types import Citation, ContextMode, HistoryMessage, Source

CITATIONS_START = "---CITATIONS---"
CITATIONS_END = "---END CITATIONS---"
DEFAULT_HISTORY_WINDOW = 10

_BLOCK_RE = re.compile(r"---CITATIONS---\n(.*?)\n---END CITATIONS---", re.DOTALL)
_BLOCK_STRIP_RE = re.compile(r"\n?---CITATIONS---.*?---END CITATIONS---\n?", re.DOTALL)
_TRAILING_BLOCK_RE = re.compile(r"---CITATIONS---.*\Z", re.DOTALL)
_CITATION_LINE_RE = re.compile(r'\[Source (\d+)\]:\s*"?([^"]+)"?')
_INLINE_RE = re.compile(r"\[Source (\d+)\]")

_INSTRUCTIONS = """You are a helpful AI assistant that answers questions based on the provided sources.

IMPORTANT INSTRUCTIONS:
1. Base your answers ONLY on the provided sources
2. When you use information from a source, cite it using the format [Source N] where N is the numeric index (e.g., [Source 1], [Source 2])
3. Be accurate and well-structured
4. If the sources don't contain relevant information, say so

After your main response, add a CITATIONS section in this exact format:
---CITATIONS---
[Source 1]: "exact quote or paraphrase from source"
---END CITATIONS---

Only include sources you actually referenced. If you didn't cite any sources, omit the citations section."""

_AGENTIC_NOTE = """Source contents are not included below. Use the available tools to list, rank and read
sources before answering; keep the [Source N] numbering from the list."""


def build_system_prompt(sources: Sequence[Source], *, context_mode: ContextMode = "classic") -> str:
    """Render the system prompt listing ``sources``.

    ``classic`` inlines every source body; ``agentic`` lists titles only and
    leaves retrieval to the source tools.
    """

    sections = [_INSTRUCTIONS, f"Available sources:\n{format_source_list(sources)}"]
    if context_mode == "agentic":
        sections.append(_AGENTIC_NOTE)
    else:
        sections.append(f"Source contents:\n\n{format_source_context(sources)}")
    return "\n\n".join(sections)


def format_source_list(sources: Sequence[Source]) -> str:
    if not sources:
        return "  (no sources selected)"
    return "\n".join(f'  {index}. "{source.title}" (ID: {source.id})' for index, source in enumerate(sources, 1))


def format_source_context(sources: Sequence[Source]) -> str:
    return "\n\n---\n\n".join(
        f"[Source {index}] ID: {source.id}\nTitle: {source.title}\nURL: {source.url}\n\n{source.content}"
        for index, source in enumerate(sources, 1)
    )


def build_history_messages(
    history: Iterable[HistoryMessage], *, window: int = DEFAULT_HISTORY_WINDOW
) -> list[dict[str, str]]:
    """Return the trailing ``window`` messages in chat-completions form."""

    messages = [{"role": message.role, "content": message.content} for message in history]
    if window <= 0:
        return []
    return messages[-window:]


def strip_partial_citations(text: str) -> str:
    """Hide a citations block that has started streaming but is not yet complete."""

    return _TRAILING_BLOCK_RE.sub("", text)


def parse_citations(content: str, sources: Sequence[Source]) -> tuple[str, list[Citation]]:
    """Split a raw answer into display text and citations.

    Inline markers for a source cited more than once are relabelled
    ``[Source Na]``, ``[Source Nb]`` and so on, and one citation is produced
    per occurrence. Markers pointing outside ``sources`` are left untouched
    and produce no citation.
    """

    clean = content
    excerpts_by_number: dict[int, list[str]] = {}

    block = _BLOCK_RE.search(content)
    if block:
        clean = _BLOCK_STRIP_RE.sub("", content, count=1).strip()
        for line in block.group(1).split("\n"):
            if not line.strip():
                continue
            match = _CITATION_LINE_RE.search(line)
            if match:
                excerpts_by_number.setdefault(int(match.group(1)), []).append(match.group(2).strip())

    counts: dict[int, int] = {}
    for match in _INLINE_RE.finditer(clean):
        number = int(match.group(1))
        counts[number] = counts.get(number, 0) + 1

    seen: dict[int, int] = {}

    def _relabel(match: re.Match[str]) -> str:
        number = int(match.group(1))
        occurrence = seen.get(number, 0)
        seen[number] = occurrence + 1
        if counts.get(number, 1) > 1 and 0 < number <= len(sources):
            return f"[Source {number}{chr(ord('a') + occurrence)}]"
        return match.group(0)

    clean = _INLINE_RE.sub(_relabel, clean)

    citations: list[Citation] = []
    for number, count in counts.items():
        index = number - 1
        if not 0 <= index < len(sources):
            continue
        source = sources[index]
        excerpts = excerpts_by_number.get(number, [])
        if count > 1:
            for occurrence in range(count):
                excerpt = (
                    excerpts[occurrence]
                    if occurrence < len(excerpts)
                    else f"Reference {chr(ord('a') + occurrence)} from this source"
                )
                citations.append(Citation(source.id, source.title, excerpt))
        else:
            citations.append(Citation(source.id, source.title, excerpts[0] if excerpts else "Referenced in response"))

    return clean, citations


__all__ = [
    "CITATIONS_END",
    "CITATIONS_START",
    "DEFAULT_HISTORY_WINDOW",
    "build_history_messages",
    "build_system_prompt",
    "format_source_context",
    "format_source_list",
    "parse_citations",
    "strip_partial_citations",
]
