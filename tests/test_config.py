"""Tests for chapterflow.config module."""

import pytest

from chapterflow.config import OrchestratorSettings, chapter_filename, load_config


def test_defaults_without_file(tmp_path):
    config = load_config(tmp_path / "absent.yaml")
    assert config["orchestration"]["max_workers"] == 4
    assert config["retry"]["max_attempts"] == 5
    assert config["assembly"]["chapter_filename_template"] == "chapter_{order:02d}.md"


def test_user_values_merge_over_defaults(tmp_path):
    path = tmp_path / "chapterflow_config.yaml"
    path.write_text(
        "retry:\n"
        "  max_attempts: 2\n"
        "llm:\n"
        "  model: local-model\n"
        "extra:\n"
        "  key: value\n"
    )
    config = load_config(path)
    assert config["retry"]["max_attempts"] == 2
    assert config["retry"]["base_delay"] == 2.0
    assert config["llm"]["model"] == "local-model"
    assert config["llm"]["temperature"] == 0.4
    assert config["extra"] == {"key": "value"}


def test_load_does_not_mutate_defaults(tmp_path):
    path = tmp_path / "c.yaml"
    path.write_text("retry:\n  max_attempts: 9\n")
    load_config(path)
    assert load_config(tmp_path / "absent.yaml")["retry"]["max_attempts"] == 5


def test_settings_from_config(tmp_path):
    path = tmp_path / "c.yaml"
    path.write_text(
        "orchestration: {max_workers: 8}\n"
        "retry: {max_attempts: 3, base_delay: 0.5}\n"
        "checkpoint: {enabled: false}\n"
    )
    settings = OrchestratorSettings.from_config(load_config(path))
    assert settings.max_workers == 8
    assert settings.max_attempts == 3
    assert settings.base_delay == 0.5
    assert settings.checkpoint_enabled is False
    assert settings.audit_enabled is True


def test_settings_validation():
    with pytest.raises(ValueError, match="max_attempts"):
        OrchestratorSettings(max_attempts=0)


def test_chapter_filename():
    assert chapter_filename(3) == "chapter_03.md"
    assert chapter_filename(12, "{order}.md") == "12.md"
