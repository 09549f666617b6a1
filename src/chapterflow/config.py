"""
chapterflow Configuration
=========================

YAML-based configuration with sensible defaults.
Loads from chapterflow_config.yaml if present, otherwise uses built-in defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

_DEFAULTS = {
    "llm": {
        "base_url": "http://localhost:8008/v1",
        "api_key": "EMPTY",
        "model": "qwen3-30b-a3b-instruct-2507",
        "temperature": 0.4,
        "max_tokens": 4096,
        "timeout_seconds": 300,
        "max_concurrent": 2,
        "language": "english",
    },
    "orchestration": {
        "max_workers": 4,
        "attempt_timeout_seconds": 600.0,
    },
    "retry": {
        "max_attempts": 5,
        "base_delay": 2.0,
        "max_delay": 60.0,
    },
    "assembly": {
        "max_edge_label_length": 30,
        "exclude_example_languages": [],
        "chapter_filename_template": "chapter_{order:02d}.md",
    },
    "checkpoint": {
        "enabled": True,
        "checkpoint_dir": "~/chapterflow-checkpoints",
    },
    "logging": {
        "log_dir": "~/chapterflow-logs",
        "audit_enabled": True,
        "console_verbosity": "info",
    },
    "output": {
        "output_dir": "output",
    },
}


def load_config(path: str | Path = "chapterflow_config.yaml") -> dict:
    """Load configuration from YAML file, merging with defaults.

    Args:
        path: Path to YAML config file. If relative, resolved from CWD.

    Returns:
        Merged config dict with all sections populated.
    """
    config = {k: dict(v) for k, v in _DEFAULTS.items()}
    config_path = Path(path)
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            user = yaml.safe_load(f) or {}
        for section, values in user.items():
            if section in config and isinstance(values, dict):
                config[section].update(values)
            else:
                config[section] = values
    return config


@dataclass
class OrchestratorSettings:
    """Typed view of the config sections the orchestrator reads."""
    max_workers: int = 4
    attempt_timeout_seconds: float = 600.0
    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 60.0
    checkpoint_enabled: bool = False
    checkpoint_dir: str = "~/chapterflow-checkpoints"
    audit_enabled: bool = False
    log_dir: str = "~/chapterflow-logs"
    chapter_filename_template: str = "chapter_{order:02d}.md"

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_config(cls, config: dict | None = None) -> "OrchestratorSettings":
        cfg = config or load_config()
        orch = cfg.get("orchestration", {})
        retry = cfg.get("retry", {})
        ckpt = cfg.get("checkpoint", {})
        log = cfg.get("logging", {})
        assembly = cfg.get("assembly", {})
        return cls(
            max_workers=int(orch.get("max_workers", 4)),
            attempt_timeout_seconds=float(orch.get("attempt_timeout_seconds", 600.0)),
            max_attempts=int(retry.get("max_attempts", 5)),
            base_delay=float(retry.get("base_delay", 2.0)),
            max_delay=float(retry.get("max_delay", 60.0)),
            checkpoint_enabled=bool(ckpt.get("enabled", False)),
            checkpoint_dir=str(ckpt.get("checkpoint_dir", "~/chapterflow-checkpoints")),
            audit_enabled=bool(log.get("audit_enabled", False)),
            log_dir=str(log.get("log_dir", "~/chapterflow-logs")),
            chapter_filename_template=str(
                assembly.get("chapter_filename_template", "chapter_{order:02d}.md")
            ),
        )


def chapter_filename(order: int, template: str = "chapter_{order:02d}.md") -> str:
    return template.format(order=order)
