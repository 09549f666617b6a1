"""Ensure src/ is on sys.path so that ``import chapterflow`` and
``import inference`` resolve to ``src/`` without an editable install.

Also provides the shared abstraction fixtures and a scripted
``ChapterGenerator`` used across the orchestrator and assembler tests.
"""

import asyncio
import sys
from pathlib import Path

import pytest

_src = str(Path(__file__).resolve().parent.parent / "src")
if _src not in sys.path:
    sys.path.insert(0, _src)

from chapterflow.config import OrchestratorSettings  # noqa: E402
from chapterflow.errors import PermanentGenerationError, TransientGenerationError  # noqa: E402
from chapterflow.models import Abstraction, ChapterContent, Relationship  # noqa: E402


def make_abstractions(*ids: str) -> list[Abstraction]:
    return [Abstraction(id=i, title=i.upper(), summary=f"About {i}") for i in ids]


class ScriptedGenerator:
    """ChapterGenerator whose behaviour per abstraction is scripted.

    ``script`` maps an abstraction id to a list of outcomes consumed one per
    call: ``"ok"``, ``"transient"`` or ``"permanent"``. Ids without a script
    (or with an exhausted one) succeed.
    """

    def __init__(self, script=None, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: list[str] = []
        self.seen_predecessors: dict[str, list[str]] = {}
        self.seen_positions: dict[str, tuple] = {}
        self.active = 0
        self.max_active = 0

    async def generate(self, abstraction, predecessors, position):
        self.calls.append(abstraction.id)
        self.seen_predecessors[abstraction.id] = [p.abstraction_id for p in predecessors]
        self.seen_positions[abstraction.id] = (position.order, position.total)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcomes = self.script.get(abstraction.id) or []
            outcome = outcomes.pop(0) if outcomes else "ok"
            if outcome == "transient":
                raise TransientGenerationError(f"upstream timeout for {abstraction.id}")
            if outcome == "permanent":
                raise PermanentGenerationError(f"refused {abstraction.id}")
            return ChapterContent(
                markdown=f"# Chapter {position.order}: {abstraction.title}\n\nAll about {abstraction.id}.\n",
                summary=f"All about {abstraction.id}.",
                tokens_in=10,
                tokens_out=20,
            )
        finally:
            self.active -= 1


@pytest.fixture
def fast_settings():
    return OrchestratorSettings(max_workers=4, max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def abc_graph():
    """A -> B, A -> C, B -> C."""
    abstractions = make_abstractions("a", "b", "c")
    relationships = [
        Relationship(source_id="a", target_id="b", label="feeds"),
        Relationship(source_id="a", target_id="c", label="configures"),
        Relationship(source_id="b", target_id="c", label="calls"),
    ]
    return abstractions, relationships


@pytest.fixture
def scripted_generator():
    return ScriptedGenerator


@pytest.fixture
def abstractions_for():
    return make_abstractions
