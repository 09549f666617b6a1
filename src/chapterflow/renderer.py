"""
Markdown rendering of a DocumentSet.

Layout written by ``write_document_set``::

    <output_dir>/job-<job_id>/
        index.md
        chapter_01.md
        chapter_02.md
        ...
        code_examples.md
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from chapterflow.models import ChapterDocument, DocumentSet

logger = logging.getLogger("chapterflow.renderer")

INDEX_FILENAME = "index.md"
CODE_EXAMPLES_FILENAME = "code_examples.md"


def render_index(doc_set: DocumentSet) -> str:
    index = doc_set.index
    parts = [f"# {index.title}", ""]
    if index.summary:
        parts += [index.summary, ""]
    if index.relationship_graph:
        parts += ["```mermaid", index.relationship_graph, "```", ""]

    parts += ["## Chapters", ""]
    for entry in index.entries:
        line = f"{entry.order}. [{entry.title}]({entry.filename})"
        if entry.summary:
            line += f" - {entry.summary}"
        parts.append(line)

    if index.missing:
        parts += ["", "## Missing chapters", ""]
        for m in index.missing:
            parts.append(f"- Chapter {m.order}: {m.title} ({m.reason})")

    parts += ["", f"[Code examples]({CODE_EXAMPLES_FILENAME})", ""]
    return "\n".join(parts)


def render_chapter(chapter: ChapterDocument) -> str:
    body = chapter.content.rstrip("\n")
    nav = []
    if chapter.previous:
        nav.append(f"Previous: [Chapter {chapter.previous.order}: {chapter.previous.title}]({chapter.previous.filename})")
    nav.append(f"[Index]({INDEX_FILENAME})")
    if chapter.next:
        nav.append(f"Next: [Chapter {chapter.next.order}: {chapter.next.title}]({chapter.next.filename})")
    return f"{body}\n\n---\n\n{' | '.join(nav)}\n"


def render_code_examples(doc_set: DocumentSet) -> str:
    parts = [f"# Code examples: {doc_set.index.title}", ""]
    if not doc_set.code_example_index:
        parts += ["No code examples.", ""]
        return "\n".join(parts)
    filenames = {c.order: c.filename for c in doc_set.chapters}
    parts += ["| Chapter | # | Language | Caption |", "|---|---|---|---|"]
    for ex in doc_set.code_example_index:
        chapter = f"[{ex.chapter_order}]({filenames[ex.chapter_order]})" if ex.chapter_order in filenames \
            else str(ex.chapter_order)
        caption = ex.caption.replace("|", "\\|")
        parts.append(f"| {chapter} | {ex.example_ordinal} | {ex.language} | {caption} |")
    parts.append("")
    return "\n".join(parts)


def render_document_set(doc_set: DocumentSet) -> dict[str, str]:
    """Return ``{filename: markdown}`` for every file of the set."""
    files = {INDEX_FILENAME: render_index(doc_set)}
    for chapter in doc_set.chapters:
        files[chapter.filename] = render_chapter(chapter)
    files[CODE_EXAMPLES_FILENAME] = render_code_examples(doc_set)
    return files


def write_document_set(doc_set: DocumentSet, output_dir: str | Path) -> Path:
    """Write the set under ``<output_dir>/job-<job_id>/`` and return that directory."""
    target_dir = Path(output_dir).expanduser() / doc_set.directory_name
    target_dir.mkdir(parents=True, exist_ok=True)

    files = render_document_set(doc_set)
    for filename, text in files.items():
        target = target_dir / filename
        tmp_path = str(target) + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, str(target))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug(f"Wrote {target}")

    # A rerun of the same job must not leave chapters from an earlier set behind
    for stale in sorted(target_dir.glob("*.md")):
        if stale.name not in files:
            stale.unlink()
            logger.info(f"Removed stale {stale.name} from {target_dir}")

    logger.info(f"Document set for job {doc_set.job_id} written to {target_dir}")
    return target_dir
