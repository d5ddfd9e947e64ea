"""Atomic set-membership primitives over the document store.

Claims, marks and restart votes are modelled as rows under a unique
constraint, so membership changes are single statements rather than a
read of the whole collection followed by a rewrite of it.
"""

from sqlalchemy.exc import IntegrityError

from bingo import db
from .errors import ConflictError


def toggle_row(model, key: dict, **values) -> bool:
    """Toggle membership of the row identified by ``key``.

    Returns True when this call added the row. The answer comes from the
    rowcount of the statement that changed the set, never from an earlier
    read. Runs inside the caller's transaction; the caller commits.
    """
    removed = model.query.filter_by(**key).delete(synchronize_session=False)
    if removed:
        return False
    try:
        with db.session.begin_nested():
            db.session.add(model(**key, **values))
        return True
    except IntegrityError:
        # A concurrent toggle inserted the row first; ours takes it out again.
        model.query.filter_by(**key).delete(synchronize_session=False)
        return False


def add_unique_row(model, key: dict, message: str, **values):
    """Insert a row that may exist at most once, or raise ConflictError."""
    if model.query.filter_by(**key).first() is not None:
        raise ConflictError(message)
    try:
        with db.session.begin_nested():
            row = model(**key, **values)
            db.session.add(row)
    except IntegrityError:
        raise ConflictError(message)
    return row
