"""chapterflow inference package.

Provides an async OpenAI-compatible client and the LLM-backed chapter generator.
"""
from inference.llm_client import (
    CompletionResult,
    InferenceClient,
    UsageLedger,
    classify_exception,
)
from inference.chapter_writer import LLMChapterGenerator, build_chapter_prompt

__all__ = [
    "CompletionResult",
    "InferenceClient",
    "UsageLedger",
    "classify_exception",
    "LLMChapterGenerator",
    "build_chapter_prompt",
]
