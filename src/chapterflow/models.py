"""
chapterflow Data Models
=======================

Pydantic v2 data structures for abstraction graphs, chapter plans,
generation jobs and assembled document sets.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Scanner output
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Abstraction(BaseModel):
    """A discovered architectural component. Immutable within a run."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    title: str
    summary: str = ""
    files: tuple[str, ...] = ()


class Relationship(BaseModel):
    """Directed, labeled edge: ``source_id`` interacts with ``target_id``."""
    model_config = ConfigDict(frozen=True)

    source_id: str
    target_id: str
    label: str = ""


class ValidationKind(str, Enum):
    DUPLICATE_ABSTRACTION = "duplicate_abstraction"
    SELF_EDGE = "self_edge"
    UNKNOWN_SOURCE = "unknown_source"
    UNKNOWN_TARGET = "unknown_target"


class GraphValidationError(BaseModel):
    """Non-fatal problem found while building the graph. Reported, never raised."""
    kind: ValidationKind
    message: str
    abstraction_id: Optional[str] = None
    relationship: Optional[Relationship] = None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sequencing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChapterPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    order: int = Field(ge=1)
    abstraction_id: str
    depends_on_chapter_ids: tuple[str, ...] = ()
    forced: bool = False   # placed by cycle breaking rather than in-degree 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Generation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChapterContent(BaseModel):
    """Generator output for one chapter."""
    markdown: str
    summary: str = ""
    tokens_in: int = 0
    tokens_out: int = 0


class PredecessorSummary(BaseModel):
    """What a dependent chapter may cite about an earlier, succeeded chapter."""
    order: int
    abstraction_id: str
    title: str
    summary: str
    filename: str


class ChapterPosition(BaseModel):
    order: int
    total: int
    previous_title: Optional[str] = None
    next_title: Optional[str] = None

    @property
    def is_first(self) -> bool:
        return self.order == 1

    @property
    def is_last(self) -> bool:
        return self.order == self.total


class ChapterState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    DEPENDENCY = "dependency"


class ChapterTask(BaseModel):
    abstraction_id: str
    order: int
    state: ChapterState = ChapterState.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    content: Optional[ChapterContent] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ChapterState.SUCCEEDED, ChapterState.FAILED)

    @property
    def latency_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PARTIALLY_FAILED = "partially-failed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.PARTIALLY_FAILED,
    JobStatus.FAILED,
})


class JobStage(str, Enum):
    EXTRACT = "extract"
    BUILD_GRAPH = "build_graph"
    SEQUENCE = "sequence"
    GENERATE = "generate"
    ASSEMBLE = "assemble"


class JobMetrics(BaseModel):
    """Aggregate counters for one run."""
    generator_calls: int = 0
    retries: int = 0
    reused_chapters: int = 0
    propagated_failures: int = 0
    forced_placements: int = 0
    validation_errors: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    chapter_latency_ms: dict[str, float] = Field(default_factory=dict)
    total_wall_time_ms: int = 0


class GenerationJob(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING
    stage: JobStage = JobStage.EXTRACT
    project_name: str = ""
    project_summary: str = ""
    abstractions: list[Abstraction] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    validation_errors: list[GraphValidationError] = Field(default_factory=list)
    plans: list[ChapterPlan] = Field(default_factory=list)
    chapter_tasks: dict[str, ChapterTask] = Field(default_factory=dict)
    metrics: JobMetrics = Field(default_factory=JobMetrics)
    created_at: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def tasks_in_state(self, state: ChapterState) -> list[ChapterTask]:
        return [t for t in self.chapter_tasks.values() if t.state == state]

    def outputs(self) -> dict[str, ChapterContent]:
        """Content of every succeeded chapter, keyed by abstraction id."""
        return {
            aid: task.content
            for aid, task in self.chapter_tasks.items()
            if task.state == ChapterState.SUCCEEDED and task.content is not None
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Assembled output
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChapterLink(BaseModel):
    order: int
    title: str
    filename: str


class IndexEntry(BaseModel):
    order: int
    abstraction_id: str
    title: str
    summary: str
    filename: str


class MissingChapter(BaseModel):
    order: int
    abstraction_id: str
    title: str
    reason: str = ""


class IndexDocument(BaseModel):
    title: str
    summary: str = ""
    entries: list[IndexEntry] = Field(default_factory=list)
    relationship_graph: str = ""   # mermaid flowchart source
    missing: list[MissingChapter] = Field(default_factory=list)


class ChapterDocument(BaseModel):
    order: int
    abstraction_id: str
    title: str
    filename: str
    content: str
    previous: Optional[ChapterLink] = None
    next: Optional[ChapterLink] = None


class CodeExample(BaseModel):
    chapter_order: int
    example_ordinal: int
    language: str
    caption: str


class DocumentSet(BaseModel):
    job_id: str
    status: JobStatus
    index: IndexDocument
    chapters: list[ChapterDocument] = Field(default_factory=list)
    code_example_index: list[CodeExample] = Field(default_factory=list)

    @property
    def directory_name(self) -> str:
        return f"job-{self.job_id}"
