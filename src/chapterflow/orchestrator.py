"""
chapterflow Orchestrator
========================

Drives one generation job through its stages:

    extract -> build graph -> sequence -> generate chapters -> (assemble)

Architecture:
- Stage 1 (graph + sequence) runs once, synchronously, before any chapter task
- Stage 2 spawns one asyncio task per ChapterPlan; a task waits on the
  completion events of its dependencies, then generates under a semaphore
  (max_workers from config)
- Transient generator errors are retried with exponential backoff (tenacity);
  permanent ones fail the chapter at once
- A failed chapter fails every chapter that depends on it, nothing else
- Succeeded chapters are checkpointed and reused when the same job_id runs again
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from chapterflow.audit import JobAuditLog
from chapterflow.checkpoint import CheckpointManager
from chapterflow.config import OrchestratorSettings, chapter_filename
from chapterflow.errors import InvalidTransitionError, is_transient
from chapterflow.generator import ChapterGenerator, summarize_markdown
from chapterflow.graph import build_graph
from chapterflow.models import (
    Abstraction,
    ChapterContent,
    ChapterPlan,
    ChapterPosition,
    ChapterState,
    ChapterTask,
    ErrorKind,
    GenerationJob,
    JobStage,
    JobStatus,
    PredecessorSummary,
    Relationship,
)
from chapterflow.sequencer import sequence

logger = logging.getLogger("chapterflow.orchestrator")

ProgressCallback = Callable[[str, dict], Awaitable[None]]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Per-chapter state table
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

_ALLOWED_TRANSITIONS: dict[ChapterState, frozenset[ChapterState]] = {
    ChapterState.PENDING: frozenset({ChapterState.RUNNING, ChapterState.FAILED}),
    ChapterState.RUNNING: frozenset({
        ChapterState.SUCCEEDED,
        ChapterState.RETRYING,
        ChapterState.FAILED,
        ChapterState.PENDING,   # abandoned on cancellation
    }),
    ChapterState.RETRYING: frozenset({ChapterState.RUNNING, ChapterState.PENDING}),
    ChapterState.SUCCEEDED: frozenset(),
    ChapterState.FAILED: frozenset(),
}


class JobStateTable:
    """The job's chapter task map; every mutation goes through ``transition``.

    Mutations are serialized by an ``asyncio.Lock`` so concurrent chapter
    completions never interleave on the same entry.
    """

    def __init__(self, job: GenerationJob):
        self._job = job
        self._lock = asyncio.Lock()

    def get(self, abstraction_id: str) -> ChapterTask:
        return self._job.chapter_tasks[abstraction_id]

    def state(self, abstraction_id: str) -> ChapterState:
        return self._job.chapter_tasks[abstraction_id].state

    async def transition(
        self,
        abstraction_id: str,
        target: ChapterState,
        *,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        content: Optional[ChapterContent] = None,
    ) -> ChapterTask:
        async with self._lock:
            task = self._job.chapter_tasks[abstraction_id]
            if target not in _ALLOWED_TRANSITIONS[task.state]:
                raise InvalidTransitionError(
                    f"chapter {abstraction_id}", task.state.value, target.value
                )
            now = time.monotonic()
            if target == ChapterState.RUNNING:
                task.attempts += 1
                if task.started_at is None:
                    task.started_at = now
            if error is not None:
                task.last_error = error
                task.error_kind = error_kind
            if content is not None:
                task.content = content
            if target in (ChapterState.SUCCEEDED, ChapterState.FAILED):
                task.finished_at = now
            task.state = target
            return task

    def abandon_in_flight(self) -> list[str]:
        """Reset running/retrying chapters to pending. Call only once no task is live."""
        abandoned = []
        for aid, task in self._job.chapter_tasks.items():
            if task.state in (ChapterState.RUNNING, ChapterState.RETRYING):
                task.state = ChapterState.PENDING
                task.started_at = None
                abandoned.append(aid)
        return abandoned


def resolve_job_status(tasks: Iterable[ChapterTask]) -> JobStatus:
    """Job status from terminal chapter states.

    ``succeeded`` only when every chapter succeeded (an empty plan counts),
    ``failed`` when none did, ``partially-failed`` otherwise.
    """
    tasks = list(tasks)
    succeeded = sum(1 for t in tasks if t.state == ChapterState.SUCCEEDED)
    if succeeded == len(tasks):
        return JobStatus.SUCCEEDED
    if succeeded == 0:
        return JobStatus.FAILED
    return JobStatus.PARTIALLY_FAILED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Orchestrator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class JobOrchestrator:
    """Runs a generation job end to end (stages 1 and 2).

    Args:
        settings: Concurrency, retry, checkpoint and audit settings
        checkpoint: Explicit checkpoint manager (otherwise created per job
            when ``settings.checkpoint_enabled``)
        audit: Explicit audit log (otherwise created per job when
            ``settings.audit_enabled``)
        on_progress: Optional async callback(event_type: str, data: dict)
    """

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        *,
        checkpoint: Optional[CheckpointManager] = None,
        audit: Optional[JobAuditLog] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.settings = settings or OrchestratorSettings()
        self._checkpoint = checkpoint
        self._audit = audit
        self._on_progress = on_progress
        self._cancel_event = asyncio.Event()
        self._job: Optional[GenerationJob] = None
        self._table: Optional[JobStateTable] = None
        self._done: dict[str, asyncio.Event] = {}

    @property
    def job(self) -> Optional[GenerationJob]:
        return self._job

    def cancel(self) -> None:
        """Stop starting new chapters; in-flight ones are abandoned."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _progress(self, event: str, data: dict) -> None:
        if self._on_progress:
            await self._on_progress(event, data)

    async def _save(self, label: str) -> None:
        if self._checkpoint is not None and self._job is not None:
            await self._checkpoint.save(self._job, label)

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    def _plan(
        self,
        job: GenerationJob,
        abstractions: list[Abstraction],
        relationships: list[Relationship],
    ) -> None:
        job.stage = JobStage.BUILD_GRAPH
        graph, errors = build_graph(abstractions, relationships)
        job.abstractions = graph.abstractions
        job.relationships = graph.relationships
        job.validation_errors = errors
        job.metrics.validation_errors = len(errors)
        if self._audit:
            self._audit.stage_completed(
                JobStage.BUILD_GRAPH.value,
                nodes=graph.node_count,
                edges=graph.edge_count,
                validation_errors=len(errors),
            )

        job.stage = JobStage.SEQUENCE
        job.plans = sequence(graph)
        job.metrics.forced_placements = sum(1 for p in job.plans if p.forced)
        job.chapter_tasks = {
            p.abstraction_id: ChapterTask(abstraction_id=p.abstraction_id, order=p.order)
            for p in job.plans
        }
        if self._audit:
            self._audit.stage_completed(
                JobStage.SEQUENCE.value,
                chapters=len(job.plans),
                forced_placements=job.metrics.forced_placements,
            )

    def _reuse(self, job: GenerationJob, previous: GenerationJob) -> int:
        """Carry over succeeded chapters whose plan is unchanged."""
        previous_plans = {p.abstraction_id: p for p in previous.plans}
        reused = 0
        for plan in job.plans:
            old_task = previous.chapter_tasks.get(plan.abstraction_id)
            if (
                old_task is None
                or old_task.state != ChapterState.SUCCEEDED
                or old_task.content is None
                or previous_plans.get(plan.abstraction_id) != plan
            ):
                continue
            job.chapter_tasks[plan.abstraction_id] = old_task.model_copy(deep=True)
            reused += 1
        return reused

    # ------------------------------------------------------------------
    # Stage 2
    # ------------------------------------------------------------------

    def _predecessors(self, plan: ChapterPlan) -> list[PredecessorSummary]:
        job = self._job
        by_id = {a.id: a for a in job.abstractions}
        summaries = []
        for dep in plan.depends_on_chapter_ids:
            task = job.chapter_tasks[dep]
            abstraction = by_id[dep]
            summary = ""
            if task.content is not None:
                summary = task.content.summary or summarize_markdown(task.content.markdown)
            summaries.append(PredecessorSummary(
                order=task.order,
                abstraction_id=dep,
                title=abstraction.title,
                summary=summary or abstraction.summary,
                filename=chapter_filename(task.order, self.settings.chapter_filename_template),
            ))
        return summaries

    def _position(self, plan: ChapterPlan) -> ChapterPosition:
        job = self._job
        by_id = {a.id: a for a in job.abstractions}
        by_order = {p.order: p.abstraction_id for p in job.plans}
        prev_id = by_order.get(plan.order - 1)
        next_id = by_order.get(plan.order + 1)
        return ChapterPosition(
            order=plan.order,
            total=len(job.plans),
            previous_title=by_id[prev_id].title if prev_id else None,
            next_title=by_id[next_id].title if next_id else None,
        )

    def _log_retry(self, plan: ChapterPlan) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            self._job.metrics.retries += 1
            logger.warning(
                f"Chapter {plan.order} ({plan.abstraction_id}) attempt "
                f"{retry_state.attempt_number} failed transiently: {exc}. "
                f"Retrying in {delay:.1f}s"
            )
            if self._audit:
                self._audit.chapter_retry(plan.abstraction_id, retry_state.attempt_number, delay, str(exc))
        return before_sleep

    async def _attempt(
        self,
        plan: ChapterPlan,
        generator: ChapterGenerator,
        abstraction: Abstraction,
        predecessors: list[PredecessorSummary],
        position: ChapterPosition,
    ) -> ChapterContent:
        aid = plan.abstraction_id
        task = await self._table.transition(aid, ChapterState.RUNNING)
        self._job.metrics.generator_calls += 1
        if self._audit:
            self._audit.chapter_started(aid, plan.order, task.attempts)
        await self._progress("chapter_start", {"order": plan.order, "id": aid, "attempt": task.attempts})
        try:
            return await asyncio.wait_for(
                generator.generate(abstraction, predecessors, position),
                timeout=self.settings.attempt_timeout_seconds,
            )
        except Exception as exc:
            if is_transient(exc) and task.attempts < self.settings.max_attempts:
                await self._table.transition(
                    aid, ChapterState.RETRYING, error=str(exc) or type(exc).__name__,
                    error_kind=ErrorKind.TRANSIENT,
                )
            raise

    async def _generate(self, plan: ChapterPlan, generator: ChapterGenerator) -> None:
        aid = plan.abstraction_id
        abstraction = next(a for a in self._job.abstractions if a.id == aid)
        predecessors = self._predecessors(plan)
        position = self._position(plan)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=self.settings.base_delay, max=self.settings.max_delay),
            retry=retry_if_exception(is_transient),
            before_sleep=self._log_retry(plan),
            reraise=True,
        )
        try:
            content = await retrying(self._attempt, plan, generator, abstraction, predecessors, position)
        except Exception as exc:
            kind = ErrorKind.TRANSIENT if is_transient(exc) else ErrorKind.PERMANENT
            message = str(exc) or type(exc).__name__
            await self._table.transition(aid, ChapterState.FAILED, error=message, error_kind=kind)
            logger.error(f"Chapter {plan.order} ({aid}) failed ({kind.value}): {message}")
            if self._audit:
                self._audit.chapter_failed(aid, plan.order, kind.value, message)
            await self._progress("chapter_failed", {"order": plan.order, "id": aid, "error": message})
            return

        task = await self._table.transition(aid, ChapterState.SUCCEEDED, content=content)
        metrics = self._job.metrics
        metrics.total_tokens_in += content.tokens_in
        metrics.total_tokens_out += content.tokens_out
        if task.latency_ms is not None:
            metrics.chapter_latency_ms[aid] = task.latency_ms
        logger.info(f"Chapter {plan.order} ({aid}) succeeded after {task.attempts} attempt(s)")
        if self._audit:
            self._audit.chapter_succeeded(aid, plan.order, (task.latency_ms or 0.0) / 1000)
        await self._progress("chapter_done", {"order": plan.order, "id": aid})

    async def _run_chapter(
        self,
        plan: ChapterPlan,
        generator: ChapterGenerator,
        semaphore: asyncio.Semaphore,
    ) -> None:
        aid = plan.abstraction_id
        try:
            for dep in plan.depends_on_chapter_ids:
                await self._done[dep].wait()

            failed_deps = [
                d for d in plan.depends_on_chapter_ids
                if self._table.state(d) != ChapterState.SUCCEEDED
            ]
            if failed_deps:
                message = f"Dependency not available: {', '.join(failed_deps)}"
                await self._table.transition(
                    aid, ChapterState.FAILED, error=message, error_kind=ErrorKind.DEPENDENCY,
                )
                self._job.metrics.propagated_failures += 1
                logger.warning(f"Chapter {plan.order} ({aid}) skipped: {message}")
                if self._audit:
                    self._audit.chapter_failed(aid, plan.order, ErrorKind.DEPENDENCY.value, message)
                return

            if self.cancelled:
                return
            async with semaphore:
                if self.cancelled:
                    return
                await self._generate(plan, generator)
        finally:
            if self._table.get(aid).is_terminal:
                self._done[aid].set()
                if not self.cancelled:
                    await self._save("chapter")

    async def _run_stage2(self, generator: ChapterGenerator) -> bool:
        """Run all outstanding chapters. Returns True if the run was cancelled."""
        job = self._job
        semaphore = asyncio.Semaphore(self.settings.max_workers)
        self._done = {aid: asyncio.Event() for aid in job.chapter_tasks}
        for aid, task in job.chapter_tasks.items():
            if task.is_terminal:
                self._done[aid].set()

        tasks = [
            asyncio.create_task(
                self._run_chapter(plan, generator, semaphore),
                name=f"chapter-{plan.order}",
            )
            for plan in job.plans
            if not job.chapter_tasks[plan.abstraction_id].is_terminal
        ]
        if not tasks:
            return self.cancelled

        cancel_waiter = asyncio.create_task(self._cancel_event.wait())
        pending = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                for t in done - {cancel_waiter}:
                    pending.discard(t)
                    # Surface programming errors raised inside chapter tasks
                    t.result()
                if cancel_waiter in done:
                    break
        finally:
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            cancel_waiter.cancel()

        # Chapters left non-terminal were skipped or abandoned after cancel()
        return any(not t.is_terminal for t in job.chapter_tasks.values())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        job_id: str,
        abstractions: list[Abstraction],
        relationships: list[Relationship],
        generator: ChapterGenerator,
        *,
        previous: Optional[GenerationJob] = None,
        project_name: str = "",
        project_summary: str = "",
    ) -> GenerationJob:
        """Execute stages 1 and 2 for ``job_id``.

        Args:
            job_id: Stable run identifier; reusing it resumes the run
            abstractions: Scanner output, extraction order
            relationships: Scanner output
            generator: External content generator
            previous: Earlier state of the same job (otherwise loaded from
                the checkpoint, when checkpointing is enabled)

        Returns:
            The job in its final state (terminal, or ``cancelled``).
        """
        start = time.monotonic()
        owns_checkpoint = self._checkpoint is None and self.settings.checkpoint_enabled
        if owns_checkpoint:
            self._checkpoint = CheckpointManager(job_id, self.settings.checkpoint_dir)
        owns_audit = self._audit is None and self.settings.audit_enabled
        if owns_audit:
            self._audit = JobAuditLog(job_id, base_dir=self.settings.log_dir)
        try:
            return await self._run(job_id, abstractions, relationships, generator, previous,
                                   project_name, project_summary, start)
        finally:
            # A cancel() issued before run() applies to this run, not the next
            self._cancel_event.clear()
            if owns_audit:
                self._audit.close()
                self._audit = None
            if owns_checkpoint:
                self._checkpoint = None

    async def _run(
        self,
        job_id: str,
        abstractions: list[Abstraction],
        relationships: list[Relationship],
        generator: ChapterGenerator,
        previous: Optional[GenerationJob],
        project_name: str,
        project_summary: str,
        start: float,
    ) -> GenerationJob:
        if previous is None and self._checkpoint is not None:
            loaded = await self._checkpoint.load_latest()
            if loaded is not None:
                previous, label = loaded
                logger.info(f"Resuming job {job_id} from checkpoint '{label}'")
        if previous is not None and previous.job_id != job_id:
            raise ValueError(f"Previous job {previous.job_id} does not match job id {job_id}")

        job = GenerationJob(
            job_id=job_id,
            status=JobStatus.RUNNING,
            project_name=project_name or (previous.project_name if previous else ""),
            project_summary=project_summary or (previous.project_summary if previous else ""),
        )
        self._job = job
        self._table = JobStateTable(job)

        self._plan(job, list(abstractions), list(relationships))
        if previous is not None:
            job.metrics.reused_chapters = self._reuse(job, previous)
            if job.metrics.reused_chapters:
                logger.info(f"Reusing {job.metrics.reused_chapters} succeeded chapter(s)")
        await self._save("sequenced")
        await self._progress("sequenced", {
            "chapters": [p.abstraction_id for p in job.plans],
            "validation_errors": len(job.validation_errors),
        })
        if self._audit:
            self._audit.job_started(len(job.plans), job.metrics.reused_chapters)

        job.stage = JobStage.GENERATE
        try:
            cancelled = await self._run_stage2(generator)
        except asyncio.CancelledError:
            self._finish_cancelled(start)
            await self._save("cancelled")
            raise

        if cancelled:
            self._finish_cancelled(start)
            await self._save("cancelled")
            return job

        job.status = resolve_job_status(job.chapter_tasks.values())
        job.stage = JobStage.ASSEMBLE
        job.finished_at = time.time()
        job.metrics.total_wall_time_ms = int((time.monotonic() - start) * 1000)
        succeeded = len(job.tasks_in_state(ChapterState.SUCCEEDED))
        failed = len(job.tasks_in_state(ChapterState.FAILED))
        logger.info(f"Job {job_id} finished: {job.status.value} ({succeeded} succeeded, {failed} failed)")
        if self._audit:
            self._audit.stage_completed(JobStage.GENERATE.value, succeeded=succeeded, failed=failed)
            self._audit.job_completed(job.status.value, succeeded, failed)
        await self._save("completed")
        if self._checkpoint is not None:
            self._checkpoint.mark_completed()
        await self._progress("job_done", {"status": job.status.value})
        return job

    def _finish_cancelled(self, start: float) -> None:
        job = self._job
        abandoned = self._table.abandon_in_flight()
        job.status = JobStatus.CANCELLED
        job.metrics.total_wall_time_ms = int((time.monotonic() - start) * 1000)
        succeeded = len(job.tasks_in_state(ChapterState.SUCCEEDED))
        pending = len(job.tasks_in_state(ChapterState.PENDING))
        logger.warning(
            f"Job {job.job_id} cancelled: {succeeded} chapter(s) kept, "
            f"{pending} pending ({len(abandoned)} abandoned in flight)"
        )
        if self._audit:
            self._audit.job_cancelled(succeeded, pending)


async def run_job(
    job_id: str,
    abstractions: list[Abstraction],
    relationships: list[Relationship],
    generator: ChapterGenerator,
    *,
    settings: Optional[OrchestratorSettings] = None,
    previous: Optional[GenerationJob] = None,
    on_progress: Optional[ProgressCallback] = None,
    project_name: str = "",
    project_summary: str = "",
) -> GenerationJob:
    """One-shot convenience wrapper around ``JobOrchestrator.run``."""
    orchestrator = JobOrchestrator(settings, on_progress=on_progress)
    return await orchestrator.run(
        job_id, abstractions, relationships, generator,
        previous=previous, project_name=project_name, project_summary=project_summary,
    )
