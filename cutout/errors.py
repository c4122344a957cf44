from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Display grouping for surfaced messages. Never used for control flow."""

    INPUT = "input"
    PROCESSING = "processing"
    AI = "ai"
    EXPORT = "export"


class CutoutError(Exception):
    category: ErrorCategory = ErrorCategory.PROCESSING
    retryable: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ImageLoadError(CutoutError):
    """Source could not be decoded. Retrying the same bytes will not help."""

    category = ErrorCategory.INPUT
    retryable = False


class InferenceError(CutoutError):
    category = ErrorCategory.AI


class WriteError(CutoutError):
    category = ErrorCategory.EXPORT


class JobCancelled(CutoutError):
    """Raised at a cancellation checkpoint. Not a failure: the item keeps its current status."""

    retryable = False


def categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, CutoutError):
        return exc.category
    return ErrorCategory.PROCESSING
