"""Tests for chapterflow.audit module."""

import json

from chapterflow.audit import JobAuditLog


def read_events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_events_are_jsonl(tmp_path):
    with JobAuditLog("6f1c", base_dir=tmp_path) as audit:
        audit.job_started(3)
        audit.chapter_failed("flow", 2, "permanent", "refused")

    events = read_events(tmp_path / "6f1c" / "audit.jsonl")
    assert [e["event_type"] for e in events] == ["job_started", "chapter_failed"]
    assert events[0]["chapter_count"] == 3
    assert events[1]["error_kind"] == "permanent"
    assert all(e["job_id"] == "6f1c" for e in events)


def test_file_created_lazily(tmp_path):
    audit = JobAuditLog("lazy", base_dir=tmp_path)
    assert not audit.log_path.exists()
    audit.stage_completed("sequence", chapters=4)
    assert audit.log_path.exists()
    audit.close()


def test_resumed_run_appends(tmp_path):
    with JobAuditLog("again", base_dir=tmp_path) as audit:
        audit.job_started(2)
    with JobAuditLog("again", base_dir=tmp_path) as audit:
        audit.job_started(2, resumed_chapters=1)

    events = read_events(tmp_path / "again" / "audit.jsonl")
    assert [e["resumed_chapters"] for e in events] == [0, 1]


def test_events_after_close_are_dropped(tmp_path):
    audit = JobAuditLog("closed", base_dir=tmp_path)
    audit.job_started(1)
    audit.close()
    audit.job_completed("succeeded", 1, 0)
    assert len(read_events(audit.log_path)) == 1
