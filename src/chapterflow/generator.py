"""
ChapterGenerator capability interface.

The orchestrator only knows this protocol. Implementations signal retryable
failures with ``TransientGenerationError`` and everything else with
``PermanentGenerationError`` (any other exception is treated as permanent).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from chapterflow.models import (
    Abstraction,
    ChapterContent,
    ChapterPosition,
    PredecessorSummary,
)


@runtime_checkable
class ChapterGenerator(Protocol):
    async def generate(
        self,
        abstraction: Abstraction,
        predecessors: list[PredecessorSummary],
        position: ChapterPosition,
    ) -> ChapterContent:
        ...


def summarize_markdown(markdown: str, max_chars: int = 300) -> str:
    """First prose paragraph of a chapter, truncated at a sentence boundary.

    Headings, fences and their contents are skipped.
    """
    in_fence = False
    paragraph: list[str] = []
    for line in markdown.splitlines():
        stripped = line.strip()
        if stripped.startswith(("```", "~~~")):
            in_fence = not in_fence
            if paragraph:
                break
            continue
        if in_fence:
            continue
        if not stripped:
            if paragraph:
                break
            continue
        if stripped.startswith(("#", ">", "|", "---")):
            if paragraph:
                break
            continue
        paragraph.append(stripped)

    text = " ".join(paragraph)
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    boundary = max(truncated.rfind(". "), truncated.rfind("! "), truncated.rfind("? "))
    if boundary > max_chars * 0.5:
        return truncated[:boundary + 1]
    return truncated.rstrip() + "..."
