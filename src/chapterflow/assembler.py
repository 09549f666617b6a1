"""
Document Set Assembly
=====================

Collects the succeeded chapters of a finished (or cancelled) job into a
``DocumentSet``: index with relationship diagram, ordered chapters with
previous/next links, and a catalogue of embedded code examples.

Chapter numbers are never shifted: a failed chapter 4 leaves a visible
gap, and the links of chapters 3 and 5 skip over it.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from chapterflow.config import chapter_filename
from chapterflow.errors import AssemblyError
from chapterflow.models import (
    Abstraction,
    ChapterContent,
    ChapterDocument,
    ChapterLink,
    ChapterPlan,
    ChapterState,
    CodeExample,
    DocumentSet,
    GenerationJob,
    IndexDocument,
    IndexEntry,
    JobStatus,
    MissingChapter,
    Relationship,
)

logger = logging.getLogger("chapterflow.assembler")

UNLABELED = "unlabeled"

_FENCE_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
_HEADING_RE = re.compile(r"^#{1,6}\s+(?P<text>.+?)\s*#*\s*$")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Code examples
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _caption_from(line: Optional[str]) -> str:
    if line is None:
        return UNLABELED
    heading = _HEADING_RE.match(line)
    if heading:
        return heading.group("text").strip()
    if line.endswith(":"):
        caption = line[:-1].strip().strip("*_ ")
        return caption or UNLABELED
    return UNLABELED


def extract_code_examples(
    markdown: str,
    chapter_order: int,
    exclude_languages: Iterable[str] = (),
) -> list[CodeExample]:
    """Catalogue the fenced blocks of one chapter.

    Ordinals start at 1 per chapter and count only catalogued blocks. The
    caption is the closest non-blank line above the fence when it is a
    heading or an intro line ending in ``:``.
    """
    excluded = {lang.lower() for lang in exclude_languages}
    examples: list[CodeExample] = []
    previous_line: Optional[str] = None
    open_fence: Optional[str] = None

    for raw in markdown.splitlines():
        line = raw.strip()
        match = _FENCE_RE.match(raw.rstrip())

        if open_fence is not None:
            # A closing fence uses the same character, at least as long, no info string
            if match and match.group("fence")[0] == open_fence[0] \
                    and len(match.group("fence")) >= len(open_fence) \
                    and not match.group("info").strip():
                open_fence = None
                previous_line = None
            continue

        if match:
            fence = match.group("fence")
            info = match.group("info").strip()
            # Backtick fences cannot carry backticks in their info string
            if fence[0] == "`" and "`" in info:
                previous_line = line
                continue
            open_fence = fence
            language = info.split()[0].lower() if info else UNLABELED
            if language not in excluded:
                examples.append(CodeExample(
                    chapter_order=chapter_order,
                    example_ordinal=len(examples) + 1,
                    language=language,
                    caption=_caption_from(previous_line),
                ))
            continue

        if line:
            previous_line = line

    if open_fence is not None:
        logger.debug(f"Chapter {chapter_order}: unterminated code fence")
    return examples


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Relationship diagram
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def render_relationship_graph(
    abstractions: list[Abstraction],
    relationships: list[Relationship],
    max_label_length: int = 30,
) -> str:
    """Mermaid ``flowchart TD`` source; node ids are positional (A0, A1, ...)."""
    node_ids = {a.id: f"A{i}" for i, a in enumerate(abstractions)}
    lines = ["flowchart TD"]
    for a in abstractions:
        lines.append(f'    {node_ids[a.id]}["{a.title.replace(chr(34), "")}"]')
    for rel in relationships:
        if rel.source_id not in node_ids or rel.target_id not in node_ids:
            continue
        label = rel.label.replace('"', "").replace("\n", " ")
        if len(label) > max_label_length:
            label = label[:max_label_length - 3] + "..."
        src, tgt = node_ids[rel.source_id], node_ids[rel.target_id]
        if label:
            lines.append(f'    {src} -- "{label}" --> {tgt}')
        else:
            lines.append(f"    {src} --> {tgt}")
    return "\n".join(lines)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Assembly
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _missing_reason(job: GenerationJob, abstraction_id: str) -> str:
    task = job.chapter_tasks.get(abstraction_id)
    if task is None:
        return "not scheduled"
    if task.state == ChapterState.SUCCEEDED:
        return "no content produced"
    if task.state == ChapterState.FAILED:
        kind = task.error_kind.value if task.error_kind else "failed"
        return f"{kind}: {task.last_error}" if task.last_error else kind
    return task.state.value


def assemble(
    job: GenerationJob,
    plans: list[ChapterPlan],
    outputs: dict[str, ChapterContent],
    *,
    filename_template: str = "chapter_{order:02d}.md",
    max_edge_label_length: int = 30,
    exclude_example_languages: Iterable[str] = (),
) -> DocumentSet:
    """Build the document set for a job that has stopped running.

    Raises:
        AssemblyError: If the job is still pending or running.
    """
    if not (job.is_terminal or job.status == JobStatus.CANCELLED):
        raise AssemblyError(f"Job {job.job_id} is {job.status.value}; nothing to assemble yet")

    exclude_example_languages = list(exclude_example_languages)
    by_id = {a.id: a for a in job.abstractions}
    ordered = sorted(plans, key=lambda p: p.order)

    present: list[ChapterPlan] = []
    missing: list[MissingChapter] = []
    for plan in ordered:
        task = job.chapter_tasks.get(plan.abstraction_id)
        abstraction = by_id.get(plan.abstraction_id)
        title = abstraction.title if abstraction else plan.abstraction_id
        if (
            task is not None
            and task.state == ChapterState.SUCCEEDED
            and plan.abstraction_id in outputs
        ):
            present.append(plan)
        else:
            missing.append(MissingChapter(
                order=plan.order,
                abstraction_id=plan.abstraction_id,
                title=title,
                reason=_missing_reason(job, plan.abstraction_id),
            ))

    def link(plan: Optional[ChapterPlan]) -> Optional[ChapterLink]:
        if plan is None:
            return None
        abstraction = by_id.get(plan.abstraction_id)
        return ChapterLink(
            order=plan.order,
            title=abstraction.title if abstraction else plan.abstraction_id,
            filename=chapter_filename(plan.order, filename_template),
        )

    chapters: list[ChapterDocument] = []
    entries: list[IndexEntry] = []
    examples: list[CodeExample] = []
    for i, plan in enumerate(present):
        abstraction = by_id.get(plan.abstraction_id)
        title = abstraction.title if abstraction else plan.abstraction_id
        filename = chapter_filename(plan.order, filename_template)
        content = outputs[plan.abstraction_id]

        chapters.append(ChapterDocument(
            order=plan.order,
            abstraction_id=plan.abstraction_id,
            title=title,
            filename=filename,
            content=content.markdown,
            previous=link(present[i - 1] if i > 0 else None),
            next=link(present[i + 1] if i + 1 < len(present) else None),
        ))
        entries.append(IndexEntry(
            order=plan.order,
            abstraction_id=plan.abstraction_id,
            title=title,
            summary=(abstraction.summary if abstraction else "") or content.summary,
            filename=filename,
        ))
        examples.extend(extract_code_examples(content.markdown, plan.order, exclude_example_languages))

    if missing:
        logger.warning(
            f"Job {job.job_id}: assembling {len(chapters)} of {len(ordered)} chapters; "
            f"missing orders {[m.order for m in missing]}"
        )
    else:
        logger.info(f"Job {job.job_id}: assembled {len(chapters)} chapters, {len(examples)} code examples")

    index = IndexDocument(
        title=job.project_name or f"Job {job.job_id}",
        summary=job.project_summary,
        entries=entries,
        relationship_graph=render_relationship_graph(
            job.abstractions, job.relationships, max_edge_label_length,
        ),
        missing=missing,
    )
    return DocumentSet(
        job_id=job.job_id,
        status=job.status,
        index=index,
        chapters=chapters,
        code_example_index=examples,
    )


def assemble_job(job: GenerationJob, config: Optional[dict] = None) -> DocumentSet:
    """Assemble using the job's own plans and outputs plus the ``assembly`` config section."""
    assembly = (config or {}).get("assembly", {})
    return assemble(
        job,
        job.plans,
        job.outputs(),
        filename_template=assembly.get("chapter_filename_template", "chapter_{order:02d}.md"),
        max_edge_label_length=int(assembly.get("max_edge_label_length", 30)),
        exclude_example_languages=assembly.get("exclude_example_languages") or (),
    )
