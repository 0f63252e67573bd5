"""
Store Error Translation - Maps driver errors onto the ledger error taxonomy.

Serialization failures and lost unique races are transient conflicts; an
unreachable store is the only fatal class. Nothing here ever fabricates data.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from app.exceptions import (
    ConcurrencyConflictError,
    DataIntegrityError,
    ExternalDependencyError,
    LedgerError,
)

SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
UNIQUE_VIOLATION = "23505"
LOCK_NOT_AVAILABLE = "55P03"

# SQLSTATE classes meaning the store itself is unavailable
_UNAVAILABLE_CLASSES = ("08", "53", "57")


def _candidates(exc: BaseException) -> list[object]:
    orig = getattr(exc, "orig", None)
    return [c for c in (orig, getattr(orig, "__cause__", None)) if c is not None]


def get_sqlstate(exc: BaseException) -> str | None:
    """Extract the SQLSTATE of a wrapped driver error, if any."""
    for candidate in _candidates(exc):
        for attr in ("sqlstate", "pgcode"):
            code = getattr(candidate, attr, None)
            if isinstance(code, str):
                return code
    return None


def get_constraint_name(exc: BaseException) -> str | None:
    """Extract the violated constraint name of a wrapped driver error, if any."""
    for candidate in _candidates(exc):
        name = getattr(candidate, "constraint_name", None)
        if isinstance(name, str):
            return name
    return None


def translate_db_error(exc: SQLAlchemyError | OSError, resource: str) -> LedgerError | None:
    """
    Translate a store error into the ledger taxonomy.

    Returns None when the error is not one the taxonomy names; callers
    re-raise the original in that case.
    """
    if isinstance(exc, (PoolTimeoutError, OSError)):
        return ExternalDependencyError(f"{resource}: {exc}")

    sqlstate = get_sqlstate(exc)

    if sqlstate in (SERIALIZATION_FAILURE, DEADLOCK_DETECTED, LOCK_NOT_AVAILABLE):
        return ConcurrencyConflictError(resource)

    if isinstance(exc, IntegrityError):
        if sqlstate == UNIQUE_VIOLATION:
            constraint = get_constraint_name(exc) or resource
            return ConcurrencyConflictError(constraint)
        return DataIntegrityError(f"{resource}: {exc.orig}")

    if sqlstate is not None and sqlstate.startswith(_UNAVAILABLE_CLASSES):
        return ExternalDependencyError(f"{resource}: {exc}")

    if isinstance(exc, (OperationalError, InterfaceError)):
        return ExternalDependencyError(f"{resource}: {exc}")

    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ExternalDependencyError(f"{resource}: connection invalidated")

    return None


@contextmanager
def translated_errors(resource: str) -> Iterator[None]:
    """
    Re-raise store errors of the wrapped block in the ledger taxonomy.

    Usage:
        with translated_errors("movements"):
            result = await session.execute(...)
    """
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        translated = translate_db_error(exc, resource)
        if translated is None:
            raise
        raise translated from exc
