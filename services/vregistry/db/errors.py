"""Classification of database errors by kind.

Constraint violations are identified by SQLSTATE, never by message text.
"""

from sqlalchemy.exc import IntegrityError

UNIQUE_VIOLATION = "23505"


def _sqlstate(exc: IntegrityError) -> str | None:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the error is a unique constraint or unique index violation."""
    return _sqlstate(exc) == UNIQUE_VIOLATION


def violated_constraint(exc: IntegrityError) -> str | None:
    """Name of the violated constraint, when the driver reports it."""
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return str(name)
    return None
