#!/usr/bin/env python3
"""
chapterflow Offline Example
===========================

Runs a full job against the sample payload with a canned generator, so no
LLM backend is needed:

- sequences the abstractions (one chapter fails permanently on purpose)
- shows retries, dependency propagation and the partially-failed status
- assembles and writes the document set with its visible gap

Usage:
    python examples/offline_example.py [output_dir]
"""

import asyncio
import logging
import random
import sys
import tempfile
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from chapterflow import (
    ChapterContent,
    OrchestratorSettings,
    PermanentGenerationError,
    TransientGenerationError,
    assemble_job,
    load_payload,
    run_job,
    write_document_set,
)


class CannedGenerator:
    """Writes a stub chapter; flaky for a few calls, refuses one concept."""

    def __init__(self, refuse: str, seed: int = 7):
        self.refuse = refuse
        self.rng = random.Random(seed)

    async def generate(self, abstraction, predecessors, position):
        await asyncio.sleep(0.05)
        if abstraction.id == self.refuse:
            raise PermanentGenerationError(f"content filter refused '{abstraction.title}'")
        if self.rng.random() < 0.3:
            raise TransientGenerationError("simulated rate limit")

        links = "\n".join(f"- [{p.title}]({p.filename})" for p in predecessors) or "- none"
        markdown = (
            f"# Chapter {position.order}: {abstraction.title}\n\n"
            f"{abstraction.summary}\n\n"
            f"Builds on:\n\n{links}\n\n"
            f"A minimal example:\n\n"
            f"```python\n{abstraction.id.replace('-', '_')} = object()\n```\n"
        )
        return ChapterContent(markdown=markdown, summary=abstraction.summary)


async def progress(event: str, data: dict) -> None:
    if event in ("chapter_done", "chapter_failed"):
        print(f"  [{event}] chapter {data['order']}: {data['id']}")


async def main(output_dir: str) -> None:
    store = load_payload(Path(__file__).parent / "abstractions.yaml")
    settings = OrchestratorSettings(max_workers=2, max_attempts=4, base_delay=0.1, max_delay=0.5)

    print(f"Running job for '{store.project_name}' ({len(store)} abstractions)")
    job = await run_job(
        "offline-demo",
        store.abstractions,
        store.relationships,
        CannedGenerator(refuse="batch-processing"),
        settings=settings,
        on_progress=progress,
        project_name=store.project_name,
        project_summary=store.summary,
    )

    print(f"\nStatus: {job.status.value}")
    print(f"Generator calls: {job.metrics.generator_calls}, retries: {job.metrics.retries}")
    for plan in job.plans:
        task = job.chapter_tasks[plan.abstraction_id]
        print(f"  {plan.order}. {plan.abstraction_id:<18} {task.state.value:<10} attempts={task.attempts}")

    doc_set = assemble_job(job)
    target = write_document_set(doc_set, output_dir)
    print(f"\nDocument set written to {target}")
    for path in sorted(target.iterdir()):
        print(f"  {path.name}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    out = sys.argv[1] if len(sys.argv) > 1 else tempfile.mkdtemp(prefix="chapterflow-")
    asyncio.run(main(out))
