"""
chapterflow: Abstraction Graph Sequencing and Chapter Generation Jobs
=====================================================================

Turns the abstractions and relationships extracted from a codebase into a
deterministic teaching order, generates one chapter per abstraction under a
supervised job, and assembles a cross-linked document set.

Core modules:
- models: Pydantic v2 data structures (Abstraction, ChapterPlan, GenerationJob, DocumentSet)
- store: Scanner payload loading
- graph: Validated abstraction multigraph
- sequencer: Kahn ordering with deterministic cycle breaking
- orchestrator: Async dependency-aware chapter generation with retries and resume
- assembler: Document set assembly with gap-preserving links and code-example index
- renderer: Markdown files for a document set
- checkpoint: Job persistence for resume
- audit: JSONL event logging
"""

from chapterflow.models import (
    Abstraction,
    ChapterContent,
    ChapterDocument,
    ChapterLink,
    ChapterPlan,
    ChapterPosition,
    ChapterState,
    ChapterTask,
    CodeExample,
    DocumentSet,
    ErrorKind,
    GenerationJob,
    GraphValidationError,
    IndexDocument,
    IndexEntry,
    JobMetrics,
    JobStage,
    JobStatus,
    MissingChapter,
    PredecessorSummary,
    Relationship,
    ValidationKind,
)
from chapterflow.config import OrchestratorSettings, load_config
from chapterflow.errors import (
    AssemblyError,
    ChapterflowError,
    CheckpointError,
    GenerationError,
    InvalidTransitionError,
    PermanentGenerationError,
    ScannerPayloadError,
    TransientGenerationError,
)
from chapterflow.store import AbstractionStore, load_payload
from chapterflow.graph import AbstractionGraph, build_graph
from chapterflow.sequencer import sequence
from chapterflow.generator import ChapterGenerator
from chapterflow.orchestrator import JobOrchestrator, JobStateTable, resolve_job_status, run_job
from chapterflow.assembler import assemble, assemble_job, extract_code_examples
from chapterflow.renderer import render_document_set, write_document_set
from chapterflow.checkpoint import CheckpointManager
from chapterflow.audit import JobAuditLog

__all__ = [
    # Models
    "Abstraction",
    "ChapterContent",
    "ChapterDocument",
    "ChapterLink",
    "ChapterPlan",
    "ChapterPosition",
    "ChapterState",
    "ChapterTask",
    "CodeExample",
    "DocumentSet",
    "ErrorKind",
    "GenerationJob",
    "GraphValidationError",
    "IndexDocument",
    "IndexEntry",
    "JobMetrics",
    "JobStage",
    "JobStatus",
    "MissingChapter",
    "PredecessorSummary",
    "Relationship",
    "ValidationKind",
    # Config
    "OrchestratorSettings",
    "load_config",
    # Errors
    "AssemblyError",
    "ChapterflowError",
    "CheckpointError",
    "GenerationError",
    "InvalidTransitionError",
    "PermanentGenerationError",
    "ScannerPayloadError",
    "TransientGenerationError",
    # Store / graph / sequencing
    "AbstractionStore",
    "load_payload",
    "AbstractionGraph",
    "build_graph",
    "sequence",
    # Orchestration
    "ChapterGenerator",
    "JobOrchestrator",
    "JobStateTable",
    "resolve_job_status",
    "run_job",
    # Assembly
    "assemble",
    "assemble_job",
    "extract_code_examples",
    "render_document_set",
    "write_document_set",
    # Persistence
    "CheckpointManager",
    "JobAuditLog",
]
