"""
JobAuditLog: JSONL event trail for generation jobs.

One JSON object per line in ``<log_dir>/<job_id>/audit.jsonl``. Every record
carries ``timestamp``, ``event_type`` and ``job_id`` plus event fields.
A resumed run appends to the same file.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Optional

logger = logging.getLogger("chapterflow.audit")


class JobAuditLog:
    """
    Append-only audit trail for one job.

    The file is opened on the first event. Write failures are logged and
    dropped; an audit problem never fails a chapter.
    """

    def __init__(self, job_id: str, base_dir: Optional[str | Path] = None):
        self.job_id = job_id
        root = Path(base_dir).expanduser() if base_dir else Path.home() / "chapterflow-logs"
        self.log_path = root / job_id / "audit.jsonl"
        self._fh: Optional[IO[str]] = None
        self.closed = False

    def _emit(self, event_type: str, **fields: Any) -> None:
        if self.closed:
            logger.debug(f"Audit log for {self.job_id} closed; dropping {event_type}")
            return
        record = {
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type,
            "job_id": self.job_id,
            **fields,
        }
        try:
            if self._fh is None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = self.log_path.open("a", encoding="utf-8")
            self._fh.write(json.dumps(record, default=str) + "\n")
            self._fh.flush()
        except OSError as e:
            logger.error(f"Audit event {event_type} for job {self.job_id} not written: {e}")

    # ── job lifecycle ────────────────────────────────────────────────────

    def job_started(self, chapter_count: int, resumed_chapters: int = 0) -> None:
        self._emit("job_started", chapter_count=chapter_count, resumed_chapters=resumed_chapters)

    def stage_completed(self, stage: str, **details: Any) -> None:
        """
        Args:
            stage: ``JobStage`` value (build_graph, sequence, generate, ...)
            **details: Stage counters, e.g. ``nodes=12, validation_errors=1``
        """
        self._emit("stage_completed", stage=stage, **details)

    def job_cancelled(self, succeeded: int, pending: int) -> None:
        self._emit("job_cancelled", succeeded=succeeded, pending=pending)

    def job_completed(self, status: str, succeeded: int, failed: int) -> None:
        self._emit("job_completed", status=status, succeeded=succeeded, failed=failed)

    # ── chapters ─────────────────────────────────────────────────────────

    def chapter_started(self, abstraction_id: str, order: int, attempt: int) -> None:
        self._emit("chapter_started", abstraction_id=abstraction_id, order=order, attempt=attempt)

    def chapter_retry(self, abstraction_id: str, attempt: int, delay: float, error: str) -> None:
        self._emit("chapter_retry", abstraction_id=abstraction_id, attempt=attempt, delay=delay, error=error)

    def chapter_succeeded(self, abstraction_id: str, order: int, execution_time: float) -> None:
        self._emit("chapter_succeeded", abstraction_id=abstraction_id, order=order,
                   execution_time=execution_time)

    def chapter_failed(self, abstraction_id: str, order: int, error_kind: str, error: str) -> None:
        """``error_kind`` is transient (retries exhausted), permanent or dependency."""
        self._emit("chapter_failed", abstraction_id=abstraction_id, order=order,
                   error_kind=error_kind, error=error)

    def close(self) -> None:
        self.closed = True
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> "JobAuditLog":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
