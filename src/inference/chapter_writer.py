"""LLM-backed ChapterGenerator.

Turns one abstraction plus its predecessor summaries into a markdown
chapter via an ``InferenceClient``.
"""
import logging
import re
from typing import Optional

from chapterflow.errors import PermanentGenerationError
from chapterflow.generator import summarize_markdown
from chapterflow.models import Abstraction, ChapterContent, ChapterPosition, PredecessorSummary
from inference.llm_client import InferenceClient

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a technical writer producing a beginner-friendly tutorial about a "
    "codebase, one chapter at a time. Write in Markdown. Keep code blocks short "
    "(under 10 lines), introduce each one with a sentence ending in a colon, and "
    "tag every fence with its language."
)


def strip_thinking_tags(raw: str) -> str:
    """Remove <think>...</think> blocks some local models emit."""
    return re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()


def ensure_heading(markdown: str, order: int, title: str) -> str:
    """Force the first line to be ``# Chapter N: Title``."""
    heading = f"# Chapter {order}: {title}"
    text = markdown.strip()
    if text.startswith(f"# Chapter {order}:"):
        return text
    lines = text.split("\n")
    if lines and lines[0].strip().startswith("#"):
        lines[0] = heading
        return "\n".join(lines)
    return f"{heading}\n\n{text}"


def build_chapter_prompt(
    abstraction: Abstraction,
    predecessors: list[PredecessorSummary],
    position: ChapterPosition,
    project_name: str = "",
    chapter_listing: Optional[list[str]] = None,
    language: str = "english",
) -> str:
    parts = [
        f'Write Chapter {position.order} of {position.total} of the tutorial for '
        f'`{project_name or "this project"}`, about the concept "{abstraction.title}".',
        "",
        "Concept details:",
        f"- Name: {abstraction.title}",
        f"- Description: {abstraction.summary or 'n/a'}",
    ]
    if abstraction.files:
        parts.append(f"- Relevant files: {', '.join(abstraction.files)}")

    if chapter_listing:
        parts += ["", "Complete tutorial structure:", *chapter_listing]

    if predecessors:
        parts += ["", "Earlier chapters this one builds on (link to them where relevant):"]
        for p in predecessors:
            parts.append(f"- [Chapter {p.order}: {p.title}]({p.filename}): {p.summary}")

    parts += [
        "",
        "Instructions:",
        f"- Start with the heading `# Chapter {position.order}: {abstraction.title}`.",
        "- Explain the problem this concept solves, then walk through a concrete use case.",
        "- Show minimal code examples and explain them right after.",
        "- Describe what happens internally, step by step.",
    ]
    if position.previous_title:
        parts.append(f'- Open with a short transition from the previous chapter, "{position.previous_title}".')
    if position.next_title:
        parts.append(f'- End with a short summary and a transition to the next chapter, "{position.next_title}".')
    else:
        parts.append("- End with a short summary of the whole tutorial.")
    if language.lower() != "english":
        parts.append(f"- Write the whole chapter in {language.capitalize()}; keep code identifiers as they are.")
    return "\n".join(parts)


class LLMChapterGenerator:
    """``ChapterGenerator`` backed by an OpenAI-compatible chat model."""

    def __init__(
        self,
        client: InferenceClient,
        llm_config: Optional[dict] = None,
        project_name: str = "",
        chapter_listing: Optional[list[str]] = None,
    ):
        cfg = llm_config or {}
        self.client = client
        self.temperature = float(cfg.get("temperature", 0.4))
        self.max_tokens = int(cfg.get("max_tokens", 4096))
        self.language = str(cfg.get("language", "english"))
        self.project_name = project_name
        self.chapter_listing = chapter_listing or []

    async def generate(
        self,
        abstraction: Abstraction,
        predecessors: list[PredecessorSummary],
        position: ChapterPosition,
    ) -> ChapterContent:
        prompt = build_chapter_prompt(
            abstraction,
            predecessors,
            position,
            project_name=self.project_name,
            chapter_listing=self.chapter_listing,
            language=self.language,
        )
        result = await self.client.chat_completion(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            chapter_id=abstraction.id,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        body = strip_thinking_tags(result.content)
        if not body:
            raise PermanentGenerationError(f"Model returned an empty chapter for '{abstraction.id}'")
        if result.finish_reason == "length":
            logger.warning(f"Chapter {position.order} ({abstraction.id}) was truncated at max_tokens")

        markdown = ensure_heading(body, position.order, abstraction.title)
        return ChapterContent(
            markdown=markdown,
            summary=summarize_markdown(markdown),
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
        )
