"""Tests for chapterflow.checkpoint module."""

import json

import pytest

from chapterflow.checkpoint import CheckpointManager
from chapterflow.models import ChapterState, ChapterTask, GenerationJob, JobStatus


@pytest.fixture
def job():
    return GenerationJob(
        job_id="6f1c2a",
        status=JobStatus.RUNNING,
        chapter_tasks={
            "a": ChapterTask(abstraction_id="a", order=1, state=ChapterState.SUCCEEDED, attempts=1),
            "b": ChapterTask(abstraction_id="b", order=2),
        },
    )


@pytest.fixture
def mgr(job, tmp_path):
    return CheckpointManager(job.job_id, checkpoint_dir=str(tmp_path))


@pytest.mark.asyncio
async def test_save_load_roundtrip(mgr, job):
    await mgr.save(job, "sequenced")
    result = await mgr.load_latest()
    assert result is not None
    loaded_job, step_label = result
    assert step_label == "sequenced"
    assert loaded_job.job_id == job.job_id
    assert loaded_job.chapter_tasks["a"].state == ChapterState.SUCCEEDED
    assert loaded_job.status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_atomic_write(mgr, job):
    path = await mgr.save(job, "atomic_test")
    assert path.exists()
    # No tmp files should remain
    assert list(mgr.job_dir.glob("*.tmp")) == []
    with open(path) as f:
        data = json.load(f)
    assert data["version"] == 1
    assert data["label"] == "atomic_test"
    assert data["job"]["job_id"] == job.job_id


@pytest.mark.asyncio
async def test_latest_wins(mgr, job):
    await mgr.save(job, "sequenced")
    job.status = JobStatus.SUCCEEDED
    await mgr.save(job, "completed")
    assert mgr.latest_path.name == "completed_0001.json"
    loaded_job, label = await mgr.load_latest()
    assert label == "completed"
    assert loaded_job.status == JobStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_corrupt_checkpoint_is_skipped(mgr, job):
    await mgr.save(job, "good")
    (mgr.job_dir / "bad_0099.json").write_text("{truncated")
    loaded_job, label = await mgr.load_latest()
    assert label == "good"


@pytest.mark.asyncio
async def test_prune_keeps_last(job, tmp_path):
    mgr = CheckpointManager(job.job_id, checkpoint_dir=str(tmp_path), keep_last=2)
    for i in range(4):
        await mgr.save(job, f"step{i}")
    names = sorted(p.name for p in mgr.job_dir.glob("*.json"))
    assert names == ["step2_0002.json", "step3_0003.json"]


@pytest.mark.asyncio
async def test_counter_continues_across_managers(mgr, job, tmp_path):
    await mgr.save(job, "first")
    second = CheckpointManager(job.job_id, checkpoint_dir=str(tmp_path))
    path = await second.save(job, "second")
    assert path.name == "second_0001.json"


@pytest.mark.asyncio
async def test_mark_completed(mgr, job):
    await mgr.save(job, "before_complete")
    assert not mgr.is_completed()
    mgr.mark_completed()
    assert mgr.is_completed()


@pytest.mark.asyncio
async def test_cleanup(mgr, job):
    await mgr.save(job, "before_cleanup")
    assert mgr.job_dir.exists()
    mgr.cleanup()
    assert not mgr.job_dir.exists()


@pytest.mark.asyncio
async def test_load_latest_no_checkpoints(job, tmp_path):
    mgr = CheckpointManager(job.job_id, checkpoint_dir=str(tmp_path))
    result = await mgr.load_latest()
    assert result is None
