"""
chapterflow Error Taxonomy
==========================

Exceptions raised by the core. Validation problems in scanner output are
not exceptions: they are collected as ``GraphValidationError`` records
(see ``chapterflow.models``) next to a best-effort graph.
"""

from __future__ import annotations

import asyncio


class ChapterflowError(Exception):
    """Base class for all chapterflow errors."""


class GenerationError(ChapterflowError):
    """Raised by a ChapterGenerator when a chapter cannot be produced."""


class TransientGenerationError(GenerationError):
    """Retryable generation failure (timeout, rate limit, upstream 5xx)."""


class PermanentGenerationError(GenerationError):
    """Non-retryable generation failure (malformed request, refused content)."""


class InvalidTransitionError(ChapterflowError):
    """Raised when a job or chapter task is moved to a state it cannot reach."""

    def __init__(self, subject: str, current: str, target: str):
        self.subject = subject
        self.current = current
        self.target = target
        super().__init__(f"{subject}: illegal transition {current} -> {target}")


class AssemblyError(ChapterflowError):
    """Raised when a document set is requested for a job that is still running."""


class ScannerPayloadError(ChapterflowError):
    """Raised when a scanner payload cannot be read or has the wrong shape."""


class CheckpointError(ChapterflowError):
    """Raised when an explicitly requested checkpoint cannot be loaded."""


def is_transient(exc: BaseException) -> bool:
    """Classify an exception raised during generation.

    Timeouts count as transient even when they come from ``asyncio.wait_for``
    rather than the generator itself. Everything that is not explicitly
    transient is treated as permanent.
    """
    if isinstance(exc, TransientGenerationError):
        return True
    if isinstance(exc, PermanentGenerationError):
        return False
    return isinstance(exc, (TimeoutError, asyncio.TimeoutError))
