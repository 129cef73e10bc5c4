"""Error types raised by the inversion pipeline."""
from __future__ import annotations

from typing import Any, Dict


class PipelineError(Exception):
    """Base error carrying the context needed to reproduce a failure."""

    def __init__(self, message: str, **context: Any) -> None:
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        if self.context:
            details = ", ".join(f"{k}={v}" for k, v in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class ShapeMismatch(PipelineError, ValueError):
    """A batch or representation does not match a model's declared shape."""


class InvalidPrivacyConfiguration(PipelineError, ValueError):
    """A privacy configuration is outside its valid domain."""


class PartitionOverlap(PipelineError):
    """Two partitions that must be disjoint share records."""


class NumericInstability(PipelineError, ArithmeticError):
    """A loss or gradient became non-finite."""
