"""
chapterflow Checkpoints
=======================

Persists ``GenerationJob`` state so that a crashed, interrupted or
cancelled run can be resumed by ``job_id`` without regenerating chapters
that already succeeded.

Layout::

    <checkpoint_dir>/<job_id>/
        sequenced_0000.json
        chapter_0001.json
        ...
        completed_0007.json
        _completed

Each file is written to a ``.tmp`` sibling and moved into place with
``os.replace()``, so a reader only ever sees whole checkpoints. Disk I/O runs
in ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from chapterflow.models import GenerationJob

logger = logging.getLogger("chapterflow.checkpoint")

CHECKPOINT_FORMAT_VERSION = 1
COMPLETED_MARKER = "_completed"


def _sequence_of(path: Path) -> int:
    """``chapter_0012.json`` -> 12; unparseable names sort first."""
    _, _, suffix = path.stem.rpartition("_")
    return int(suffix) if suffix.isdigit() else -1


class CheckpointManager:
    """Numbered job snapshots for one ``job_id``.

    Args:
        job_id: Job whose snapshots live under ``<checkpoint_dir>/<job_id>``
        checkpoint_dir: Root directory (``~`` is expanded)
        keep_last: Snapshots retained after each save (0 keeps all)
    """

    def __init__(
        self,
        job_id: str,
        checkpoint_dir: str | Path = "~/chapterflow-checkpoints",
        keep_last: int = 5,
    ) -> None:
        self.job_id = job_id
        self.job_dir = Path(checkpoint_dir).expanduser() / job_id
        self.job_dir.mkdir(parents=True, exist_ok=True)
        self.keep_last = keep_last
        existing = [_sequence_of(p) for p in self.job_dir.glob("*.json")]
        self._next_seq = max(existing, default=-1) + 1
        self._lock = asyncio.Lock()

    def _snapshots(self) -> list[Path]:
        return sorted(self.job_dir.glob("*.json"), key=_sequence_of)

    @property
    def latest_path(self) -> Path | None:
        snapshots = self._snapshots()
        return snapshots[-1] if snapshots else None

    async def save(self, job: GenerationJob, label: str) -> Path:
        """Write a snapshot of ``job`` tagged with ``label`` and return its path."""
        # Serialize now; chapter tasks keep mutating the job while the write runs
        payload = json.dumps({
            "version": CHECKPOINT_FORMAT_VERSION,
            "label": label,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "job": job.model_dump(mode="json"),
        }, indent=2)

        async with self._lock:
            target = self.job_dir / f"{label}_{self._next_seq:04d}.json"
            self._next_seq += 1
            await asyncio.to_thread(self._write, target, payload)

        logger.debug(f"Checkpoint {target.name} saved for job {self.job_id}")
        return target

    def _write(self, target: Path, payload: str) -> None:
        tmp = target.with_suffix(".json.tmp")
        try:
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        if self.keep_last > 0:
            for stale in self._snapshots()[:-self.keep_last]:
                try:
                    stale.unlink()
                except OSError as exc:
                    logger.warning(f"Could not prune checkpoint {stale.name}: {exc}")

    async def load_latest(self) -> tuple[GenerationJob, str] | None:
        """Newest readable snapshot as ``(job, label)``, or ``None``.

        Unreadable or invalid snapshots are logged and skipped in favour of
        the next older one.
        """
        return await asyncio.to_thread(self._read_latest)

    def _read_latest(self) -> tuple[GenerationJob, str] | None:
        for path in reversed(self._snapshots()):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return GenerationJob.model_validate(data["job"]), data["label"]
            except (OSError, KeyError, TypeError, json.JSONDecodeError, ValidationError) as exc:
                logger.warning(f"Skipping unreadable checkpoint {path.name}: {exc}")
        return None

    def is_completed(self) -> bool:
        return (self.job_dir / COMPLETED_MARKER).exists()

    def mark_completed(self) -> None:
        (self.job_dir / COMPLETED_MARKER).touch()
        logger.info(f"Job {self.job_id} marked as completed")

    def cleanup(self) -> None:
        """Remove every snapshot of this job."""
        if self.job_dir.exists():
            shutil.rmtree(self.job_dir)
            logger.info(f"Checkpoints removed for job {self.job_id}")
