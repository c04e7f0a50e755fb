# src/annotask/errors.py

"""
Error taxonomy shared by the store, the renderer and the migrator.

- ValidationError: malformed task input; nothing is persisted.
- CorruptDataError: stored JSON is unreadable or fails task validation.
- PersistenceError: I/O failure, or a component used before it is attached
  to a project directory.
- MigrationError: any failure inside a migration attempt; the migrator
  catches it and folds it into the MigrationResult.
"""

from __future__ import annotations


class AnnotaskError(Exception):
    """Base class for every error raised by annotask."""


class ValidationError(AnnotaskError, ValueError):
    pass


class CorruptDataError(AnnotaskError):
    pass


class PersistenceError(AnnotaskError):
    pass


class MigrationError(AnnotaskError):
    pass
