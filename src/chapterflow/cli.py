"""
chapterflow command line.

Usage:
    chapterflow plan abstractions.yaml
    chapterflow run abstractions.yaml --job-id 6f1c... --output docs/
    chapterflow run abstractions.yaml --job-id 6f1c... --resume

SIGTERM cancels a running job; succeeded chapters are kept for the next run.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import signal
import sys
import uuid

from chapterflow.assembler import assemble_job
from chapterflow.checkpoint import CheckpointManager
from chapterflow.config import OrchestratorSettings, load_config
from chapterflow.errors import ChapterflowError, CheckpointError
from chapterflow.graph import build_graph
from chapterflow.models import JobStatus
from chapterflow.orchestrator import JobOrchestrator
from chapterflow.renderer import write_document_set
from chapterflow.sequencer import sequence
from chapterflow.store import AbstractionStore, load_payload

logger = logging.getLogger("chapterflow.cli")

# Job ids name the checkpoint, log and output directories
_JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _job_id(value: str) -> str:
    if not _JOB_ID_RE.match(value):
        raise argparse.ArgumentTypeError(
            f"invalid job id {value!r}: use letters, digits, '.', '_' or '-'"
        )
    return value


def _setup_logging(verbosity: str) -> None:
    logging.basicConfig(
        level=getattr(logging, verbosity.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def cmd_plan(store: AbstractionStore) -> int:
    graph, errors = build_graph(store.abstractions, store.relationships)
    plans = sequence(graph)
    for plan in plans:
        title = graph.abstraction(plan.abstraction_id).title
        marker = " (forced)" if plan.forced else ""
        deps = ", ".join(plan.depends_on_chapter_ids) or "-"
        print(f"{plan.order:>3}. {title} [{plan.abstraction_id}]{marker}  depends on: {deps}")
    if errors:
        print(f"\n{len(errors)} validation error(s):")
        for err in errors:
            print(f"  - {err.kind.value}: {err.message}")
    return 0


async def cmd_run(
    store: AbstractionStore,
    config: dict,
    job_id: str,
    output_dir: str,
    resume: bool = False,
) -> int:
    # Imported here so `plan` works without the LLM client stack configured
    from inference import InferenceClient, LLMChapterGenerator

    settings = OrchestratorSettings.from_config(config)
    previous = None
    if resume:
        loaded = await CheckpointManager(job_id, settings.checkpoint_dir).load_latest()
        if loaded is None:
            raise CheckpointError(f"No usable checkpoint for job {job_id} in {settings.checkpoint_dir}")
        previous = loaded[0]
    graph, _ = build_graph(store.abstractions, store.relationships)
    listing = [
        f"{p.order}. {graph.abstraction(p.abstraction_id).title}"
        for p in sequence(graph)
    ]

    async def progress(event: str, data: dict) -> None:
        if event in ("chapter_done", "chapter_failed"):
            print(f"  [{event}] chapter {data['order']}: {data['id']}")

    orchestrator = JobOrchestrator(settings, on_progress=progress)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, orchestrator.cancel)
    except NotImplementedError:
        # Windows event loops have no signal handlers
        pass

    async with InferenceClient(config["llm"]) as client:
        health = await client.health_check()
        if health["status"] != "healthy":
            logger.warning(f"LLM backend unhealthy ({health.get('error')}); chapters may fail")

        generator = LLMChapterGenerator(
            client, config["llm"], project_name=store.project_name, chapter_listing=listing,
        )
        job = await orchestrator.run(
            job_id,
            store.abstractions,
            store.relationships,
            generator,
            previous=previous,
            project_name=store.project_name,
            project_summary=store.summary,
        )
        tokens_in, tokens_out = client.usage.total
        logger.info(f"Job {job_id} used {tokens_in} prompt and {tokens_out} completion tokens")

    if job.status == JobStatus.CANCELLED:
        print(f"Job {job_id} cancelled; rerun with --job-id {job_id} to resume")
        return 130

    doc_set = assemble_job(job, config)
    target = write_document_set(doc_set, output_dir)
    print(f"Job {job_id}: {job.status.value}, {len(doc_set.chapters)}/{len(job.plans)} chapters -> {target}")
    return 0 if job.status == JobStatus.SUCCEEDED else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chapterflow",
        description="Sequence codebase abstractions into chapters and generate a tutorial",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", default="chapterflow_config.yaml", help="YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    plan_parser = subparsers.add_parser("plan", help="Print the chapter order for a scanner payload")
    plan_parser.add_argument("payload", help="Scanner payload (.json/.yaml)")

    run_parser = subparsers.add_parser("run", help="Generate and write the document set")
    run_parser.add_argument("payload", help="Scanner payload (.json/.yaml)")
    run_parser.add_argument("--job-id", type=_job_id, help="Job id; reuse an existing one to resume")
    run_parser.add_argument("--output", help="Output directory (default from config)")
    run_parser.add_argument("--workers", type=int, help="Max concurrent chapter generations")
    run_parser.add_argument(
        "--resume", action="store_true", help="Fail unless a checkpoint exists for --job-id"
    )

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    config = load_config(args.config)
    _setup_logging(config["logging"].get("console_verbosity", "info"))

    try:
        store = load_payload(args.payload)
        if args.command == "plan":
            return cmd_plan(store)

        if args.workers is not None:
            config["orchestration"]["max_workers"] = args.workers
        if args.resume and not args.job_id:
            parser.error("--resume requires --job-id")
        job_id = args.job_id or str(uuid.uuid4())
        output_dir = args.output or config["output"]["output_dir"]
        return asyncio.run(cmd_run(store, config, job_id, output_dir, resume=args.resume))
    except ChapterflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
