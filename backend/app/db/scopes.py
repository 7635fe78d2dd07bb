"""Typed registry of the storage scopes that imports look up and check against."""

from __future__ import annotations

import enum
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.base import Base
from app.db.models import (
    Room,
    SchoolClass,
    Student,
    Subject,
    Teacher,
    TimetableSlot,
    User,
)


class Scope(str, enum.Enum):
    CLASS = "Class"
    SUBJECT = "Subject"
    ROOM = "Room"
    STUDENT = "Student"
    TEACHER = "Teacher"
    TIMETABLE = "Timetable"
    USER = "User"


SCOPE_MODELS: dict[Scope, type[Base]] = {
    Scope.CLASS: SchoolClass,
    Scope.SUBJECT: Subject,
    Scope.ROOM: Room,
    Scope.STUDENT: Student,
    Scope.TEACHER: Teacher,
    Scope.TIMETABLE: TimetableSlot,
    Scope.USER: User,
}


def model_for(scope: Scope) -> type[Base]:
    return SCOPE_MODELS[scope]


def _column(scope: Scope, field: str):
    model = model_for(scope)
    column = getattr(model, field, None)
    if column is None:
        raise KeyError(f"{scope.value} has no field '{field}'")
    return column


def scope_has_records(db: Session, scope: Scope) -> bool:
    """Return True when at least one record exists in the scope."""
    model = model_for(scope)
    return db.execute(select(model.id).limit(1)).first() is not None


def lookup_ids(
    db: Session, scope: Scope, field: str, values: Iterable[str]
) -> dict[str, str]:
    """Map each stored ``field`` value found among ``values`` to its record id."""
    wanted = list(dict.fromkeys(values))
    if not wanted:
        return {}
    model = model_for(scope)
    column = _column(scope, field)
    rows = db.execute(select(column, model.id).where(column.in_(wanted))).all()
    return {str(value): str(record_id) for value, record_id in rows}


def find_existing_values(
    db: Session, scope: Scope, field: str, values: Iterable[str]
) -> list[str]:
    """Return the stored ``field`` values that match ``values`` verbatim."""
    wanted = list(dict.fromkeys(values))
    if not wanted:
        return []
    column = _column(scope, field)
    return [str(value) for value in db.scalars(select(column).where(column.in_(wanted)))]
