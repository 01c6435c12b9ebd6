"""Helpers for classifying IntegrityError across database backends."""

from sqlalchemy.exc import IntegrityError


def is_unique_violation(exc: IntegrityError, constraint: str, table: str) -> bool:
    """True if ``exc`` was raised by the named unique constraint.

    PostgreSQL reports the constraint name; SQLite reports
    ``UNIQUE constraint failed: <table>.<column>, ...`` instead.
    """
    message = str(exc.orig)
    if constraint in message:
        return True
    return f"UNIQUE constraint failed: {table}." in message
