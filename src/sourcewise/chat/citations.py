"""Grouping of answer citations by source for display."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ..ai.ai_types import Citation


@dataclass(slots=True)
class CitationGroup:
    """All excerpts cited from one source, numbered by first appearance."""

    number: int
    source_id: str
    source_title: str
    excerpts: list[str] = field(default_factory=list)

    def labels(self) -> list[str]:
        """Return ``["n"]`` for a single excerpt or ``["na", "nb", ...]`` otherwise."""

        if len(self.excerpts) <= 1:
            return [str(self.number)]
        return [f"{self.number}{_sub_label(index)}" for index in range(len(self.excerpts))]

    def labelled_excerpts(self) -> list[tuple[str, str]]:
        return list(zip(self.labels(), self.excerpts))

    def to_dict(self) -> dict[str, object]:
        return {
            "number": self.number,
            "source_id": self.source_id,
            "source_title": self.source_title,
            "excerpts": list(self.excerpts),
            "labels": self.labels(),
        }


def _sub_label(index: int) -> str:
    # a..z, then aa, ab, ...
    letters = ""
    index += 1
    while index > 0:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("a") + remainder) + letters
    return letters


def group_citations(citations: Iterable[Citation]) -> list[CitationGroup]:
    """Group citations by source id, deduplicating identical excerpts.

    Groups are ordered by the first appearance of their source; excerpts keep
    insertion order within a group.
    """

    groups: dict[str, CitationGroup] = {}
    for citation in citations:
        group = groups.get(citation.source_id)
        if group is None:
            group = CitationGroup(
                number=len(groups) + 1,
                source_id=citation.source_id,
                source_title=citation.source_title,
            )
            groups[citation.source_id] = group
        if citation.excerpt not in group.excerpts:
            group.excerpts.append(citation.excerpt)
    return list(groups.values())


def flatten_groups(groups: Iterable[CitationGroup]) -> list[Citation]:
    """Expand groups back into citations, in group order."""

    return [
        Citation(source_id=group.source_id, source_title=group.source_title, excerpt=excerpt)
        for group in groups
        for excerpt in group.excerpts
    ]


__all__ = ["CitationGroup", "flatten_groups", "group_citations"]
