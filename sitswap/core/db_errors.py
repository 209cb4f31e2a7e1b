"""Classification of database driver errors.

SQLAlchemy wraps driver exceptions in ``DBAPIError``. PostgreSQL drivers expose
the SQLSTATE code (``sqlstate`` on asyncpg, ``pgcode`` on psycopg); SQLite only
gives a message, so each check falls back to matching on it.
"""

from sqlalchemy.exc import DBAPIError

UNIQUE_VIOLATION = "23505"
EXCLUSION_VIOLATION = "23P01"
CHECK_VIOLATION = "23514"
UNDEFINED_TABLE = "42P01"
UNDEFINED_FUNCTION = "42883"


def sqlstate_of(exc: BaseException) -> str | None:
    """Return the SQLSTATE code carried by a wrapped driver error, if any."""
    candidates = [exc]
    orig = getattr(exc, "orig", None)
    if orig is not None:
        candidates.append(orig)
        if orig.__cause__ is not None:
            candidates.append(orig.__cause__)
    for candidate in candidates:
        for attr in ("sqlstate", "pgcode"):
            code = getattr(candidate, attr, None)
            if isinstance(code, str) and code:
                return code
    return None


def constraint_name_of(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name
        diag = getattr(candidate, "diag", None)
        if diag is not None and getattr(diag, "constraint_name", None):
            return diag.constraint_name
    return None


def _message(exc: BaseException) -> str:
    return str(getattr(exc, "orig", None) or exc).lower()


def _matches(exc: BaseException, code: str, *needles: str) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    sqlstate = sqlstate_of(exc)
    if sqlstate is not None:
        return sqlstate == code
    message = _message(exc)
    return any(needle in message for needle in needles)


def is_unique_violation(exc: BaseException) -> bool:
    return _matches(exc, UNIQUE_VIOLATION, "unique constraint failed", "duplicate key value")


def is_exclusion_violation(exc: BaseException, constraint: str | None = None) -> bool:
    if constraint and constraint_name_of(exc) == constraint:
        return True
    needles = ("conflicting key value violates exclusion constraint",)
    if constraint:
        needles = needles + (constraint.lower(),)
    return _matches(exc, EXCLUSION_VIOLATION, *needles)


def is_check_violation(exc: BaseException, constraint: str | None = None) -> bool:
    if constraint and constraint_name_of(exc) == constraint:
        return True
    needles = ("check constraint failed",)
    if constraint:
        needles = needles + (constraint.lower(),)
    return _matches(exc, CHECK_VIOLATION, *needles)


def is_undefined_table(exc: BaseException) -> bool:
    return _matches(exc, UNDEFINED_TABLE, "no such table")


def is_undefined_function(exc: BaseException) -> bool:
    return _matches(exc, UNDEFINED_FUNCTION, "no such function")
