"""Tests for chapterflow.assembler module."""

import pytest
import pytest_asyncio

from chapterflow.assembler import (
    UNLABELED,
    assemble,
    assemble_job,
    extract_code_examples,
    render_relationship_graph,
)
from chapterflow.errors import AssemblyError
from chapterflow.models import Abstraction, ChapterContent, GenerationJob, JobStatus, Relationship
from chapterflow.orchestrator import run_job


CHAPTER_WITH_CODE = """# Chapter 2: Flow Engine

The engine runs nodes in order.

## Defining a node

```python
class Node: ...
```

Run it like this:

~~~bash
python -m flow
~~~

Some trailing prose.

```
plain block
```
"""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  CODE EXAMPLES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestExtractCodeExamples:

    def test_languages_and_captions(self):
        examples = extract_code_examples(CHAPTER_WITH_CODE, chapter_order=2)
        assert [(e.example_ordinal, e.language, e.caption) for e in examples] == [
            (1, "python", "Defining a node"),
            (2, "bash", "Run it like this"),
            (3, UNLABELED, UNLABELED),
        ]
        assert all(e.chapter_order == 2 for e in examples)

    def test_fence_contents_are_not_scanned(self):
        markdown = "Intro:\n\n````markdown\n```python\nx = 1\n```\n````\n"
        examples = extract_code_examples(markdown, chapter_order=1)
        assert len(examples) == 1
        assert examples[0].language == "markdown"
        assert examples[0].caption == "Intro"

    def test_block_after_block_has_no_caption(self):
        markdown = "Example:\n```js\na()\n```\n```js\nb()\n```\n"
        examples = extract_code_examples(markdown, chapter_order=1)
        assert [e.caption for e in examples] == ["Example", UNLABELED]

    def test_excluded_languages_are_skipped(self):
        markdown = "```mermaid\ngraph TD\n```\n\nCode:\n```Python\npass\n```\n"
        examples = extract_code_examples(markdown, chapter_order=4, exclude_languages=["mermaid"])
        assert len(examples) == 1
        assert examples[0].language == "python"
        assert examples[0].example_ordinal == 1

    def test_no_fences(self):
        assert extract_code_examples("# Title\n\nJust prose.", chapter_order=1) == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  RELATIONSHIP DIAGRAM
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_relationship_graph_is_mermaid():
    abstractions = [Abstraction(id="a", title='The "A"'), Abstraction(id="b", title="B")]
    relationships = [
        Relationship(source_id="a", target_id="b", label="x" * 40),
        Relationship(source_id="b", target_id="a"),
    ]
    source = render_relationship_graph(abstractions, relationships, max_label_length=30)
    lines = source.splitlines()
    assert lines[0] == "flowchart TD"
    assert '    A0["The A"]' in lines
    assert f'    A0 -- "{"x" * 27}..." --> A1' in lines
    assert "    A1 --> A0" in lines


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ASSEMBLY
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest_asyncio.fixture
async def partial_job(abstractions_for, scripted_generator, fast_settings):
    """Five independent chapters; chapter 3 fails permanently."""
    job = await run_job(
        "job-gap", abstractions_for("a", "b", "c", "d", "e"), [],
        scripted_generator({"c": ["permanent"]}), settings=fast_settings,
    )
    assert job.status == JobStatus.PARTIALLY_FAILED
    return job


class TestAssemble:

    @pytest.mark.asyncio
    async def test_gap_is_preserved(self, partial_job):
        doc_set = assemble(partial_job, partial_job.plans, partial_job.outputs())

        assert len(doc_set.chapters) == 4
        assert [c.order for c in doc_set.chapters] == [1, 2, 4, 5]
        assert [c.filename for c in doc_set.chapters] == [
            "chapter_01.md", "chapter_02.md", "chapter_04.md", "chapter_05.md",
        ]
        fourth = doc_set.chapters[2]
        assert fourth.previous.order == 2
        assert fourth.previous.filename == "chapter_02.md"
        assert fourth.next.order == 5
        assert doc_set.chapters[1].next.order == 4
        assert doc_set.chapters[0].previous is None
        assert doc_set.chapters[-1].next is None

    @pytest.mark.asyncio
    async def test_index_lists_missing_chapters(self, partial_job):
        doc_set = assemble(partial_job, partial_job.plans, partial_job.outputs())

        assert [e.order for e in doc_set.index.entries] == [1, 2, 4, 5]
        assert [m.order for m in doc_set.index.missing] == [3]
        missing = doc_set.index.missing[0]
        assert missing.abstraction_id == "c"
        assert missing.reason.startswith("permanent:")
        assert doc_set.status == JobStatus.PARTIALLY_FAILED
        assert doc_set.directory_name == "job-job-gap"

    @pytest.mark.asyncio
    async def test_index_summary_prefers_abstraction_summary(self, partial_job):
        doc_set = assemble_job(partial_job)
        assert doc_set.index.entries[0].summary == "About a"
        assert doc_set.index.title == "Job job-gap"

    @pytest.mark.asyncio
    async def test_outputs_missing_from_map_count_as_missing(self, partial_job):
        outputs = partial_job.outputs()
        outputs.pop("b")
        doc_set = assemble(partial_job, partial_job.plans, outputs)
        assert [c.order for c in doc_set.chapters] == [1, 4, 5]
        assert doc_set.chapters[0].next.order == 4

    @pytest.mark.asyncio
    async def test_custom_filename_template(self, partial_job):
        config = {"assembly": {"chapter_filename_template": "{order:03d}-chapter.md"}}
        doc_set = assemble_job(partial_job, config)
        assert doc_set.chapters[0].filename == "001-chapter.md"
        assert doc_set.index.entries[-1].filename == "005-chapter.md"

    def test_running_job_cannot_be_assembled(self):
        job = GenerationJob(job_id="busy", status=JobStatus.RUNNING)
        with pytest.raises(AssemblyError):
            assemble(job, [], {})

    @pytest.mark.asyncio
    async def test_code_examples_use_chapter_order(self, abstractions_for, fast_settings):
        class CodeWriter:
            async def generate(self, abstraction, predecessors, position):
                return ChapterContent(markdown=CHAPTER_WITH_CODE)

        job = await run_job("job-code", abstractions_for("a", "b"), [], CodeWriter(), settings=fast_settings)
        doc_set = assemble_job(job)
        assert [(e.chapter_order, e.example_ordinal) for e in doc_set.code_example_index] == [
            (1, 1), (1, 2), (1, 3), (2, 1), (2, 2), (2, 3),
        ]
