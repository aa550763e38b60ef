"""
Exception taxonomy for the spending query engine.

Only the orchestrator boundary converts these into user-facing answers;
the class name doubles as the ``error`` code returned to callers.

An ambiguous question is deliberately absent here: it is resolved by the
classifier's default path (total spend over the default window), never
raised.
"""
from __future__ import annotations


class SpendQueryError(Exception):
    """Base exception for the query engine."""

    @property
    def code(self) -> str:
        return type(self).__name__


class InvalidInput(SpendQueryError):
    """Empty or non-string question text."""


class DataUnavailable(SpendQueryError):
    """The receipt store failed or did not answer within its timeout."""


class CacheUnavailable(SpendQueryError):
    """The result cache backend is unreachable or erroring."""
