"""
Exception hierarchy for the knowledge-graph store.

Every error raised deliberately by the store derives from
:class:`KnowledgeGraphError` so callers can catch the whole family, while
the subclasses let them react to specific failure kinds (e.g. switch to an
update when an insert hits :class:`ConstraintViolation`).
"""

from __future__ import annotations

import sqlite3


class KnowledgeGraphError(Exception):
    """Base class for all knowledge-graph errors."""


class ValidationError(KnowledgeGraphError, ValueError):
    """Input violates an enumerated or typed constraint.  Nothing was written."""


class NotFoundError(KnowledgeGraphError, LookupError):
    """A lookup by id or path matched nothing."""


class ConstraintViolation(KnowledgeGraphError):
    """A uniqueness constraint was violated (duplicate path, edge triple, entity name)."""


class MissingReferenceError(KnowledgeGraphError):
    """A foreign-key target does not exist (edge or mention to a missing row)."""


class SchemaIntegrityError(KnowledgeGraphError):
    """Required tables or the full-text index are missing.  Fatal at startup."""


class MaintenanceError(KnowledgeGraphError):
    """An FTS rebuild / ANALYZE / VACUUM step failed."""


class StateTransitionError(ValidationError):
    """A state change was rejected by the transition policy."""

    def __init__(self, from_state: str | None, to_state: str, detail: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.detail = detail
        super().__init__(
            f"Transition {from_state or '(none)'} -> {to_state} rejected: {detail}"
        )


def translate_integrity_error(exc: sqlite3.IntegrityError, operation: str) -> KnowledgeGraphError:
    """Map an ``sqlite3.IntegrityError`` onto the matching domain error."""
    message = str(exc)
    context = f"{operation}: {message}"
    if "UNIQUE constraint failed" in message:
        return ConstraintViolation(context)
    if "FOREIGN KEY constraint failed" in message:
        return MissingReferenceError(context)
    if "CHECK constraint failed" in message or "NOT NULL constraint failed" in message:
        return ValidationError(context)
    return KnowledgeGraphError(context)
