"""Per-entity import definitions: columns, row schema, relations, uniqueness, persistence."""

from __future__ import annotations

import enum
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.orm import Session

from app.db.base import Base, new_id
from app.db.models import (
    AuthAccount,
    Room,
    SchoolClass,
    Student,
    Subject,
    Teacher,
    TimetableSlot,
    User,
)
from app.db.scopes import Scope
from app.ingestion.passwords import hash_passwords
from app.ingestion.row_validator import validate_row
from app.ingestion.types import (
    ErrorCode,
    IngestionError,
    RelationSpec,
    RowResult,
    ScheduleShape,
    ValidatedRow,
)
from app.utils.batching import chunked

logger = logging.getLogger(__name__)

TRANSACTION_CHUNK_SIZE = 500
TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# Failures that belong to the rows being written. Connection and other
# operational errors propagate so the whole job is retried.
ROW_WRITE_ERRORS: tuple[type[Exception], ...] = (IntegrityError, DataError, OverflowError)


class EntityType(str, enum.Enum):
    CLASS_IMPORT = "CLASS_IMPORT"
    SUBJECT_IMPORT = "SUBJECT_IMPORT"
    ROOM_IMPORT = "ROOM_IMPORT"
    STUDENT_IMPORT = "STUDENT_IMPORT"
    TEACHER_IMPORT = "TEACHER_IMPORT"
    TIMETABLE_IMPORT = "TIMETABLE_IMPORT"

    @property
    def queue_name(self) -> str:
        return self.value.lower()


# ---------------------------------------------------------------------------
# Row schemas
# ---------------------------------------------------------------------------


class _RowSchema(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", frozen=True)


class ClassRow(_RowSchema):
    class_name: str = Field(min_length=1, max_length=128)
    batch: str = Field(min_length=1, max_length=64)


class SubjectRow(_RowSchema):
    subject_code: str = Field(min_length=1, max_length=64)
    subject_name: str = Field(min_length=1, max_length=255)


class RoomRow(_RowSchema):
    room_number: str = Field(min_length=1, max_length=64)
    building_name: str = Field(min_length=1, max_length=255)
    floor_number: int = Field(ge=INT32_MIN, le=INT32_MAX)


class _AccountRow(_RowSchema):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=6)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class StudentRow(_AccountRow):
    registration_number: str = Field(min_length=1, max_length=64)
    class_name: str = Field(min_length=1)
    enrollment_status: Literal["Pending", "Enrolled", "Failed"]


class TeacherRow(_AccountRow):
    teacher_id: str = Field(min_length=1, max_length=64)


class TimetableRow(_RowSchema):
    class_name: str = Field(min_length=1)
    teacher_id: str = Field(min_length=1)
    subject_code: str = Field(min_length=1)
    room_number: str = Field(min_length=1)
    day_of_week: Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)

    @field_validator("end_time")
    @classmethod
    def end_after_start(cls, v: str, info: ValidationInfo) -> str:
        start = info.data.get("start_time")
        if start is not None and not start < v:
            raise ValueError("start_time must be before end_time")
        return v


# ---------------------------------------------------------------------------
# Importers
# ---------------------------------------------------------------------------


def _describe(exc: Exception) -> str:
    orig = getattr(exc, "orig", None)
    detail = str(orig if orig is not None else exc).strip()
    return detail.splitlines()[0] if detail else "Insert failed"


def _insert_failed(row: ValidatedRow, message: str) -> IngestionError:
    return IngestionError(
        row=row.row_number, column="", code=ErrorCode.INSERT_FAILED, message=message
    )


class EntityImporter(ABC):
    """Everything the pipeline needs to know about one importable entity."""

    entity_type: ClassVar[EntityType]
    expected_headers: ClassVar[tuple[str, ...]]
    row_schema: ClassVar[type[BaseModel]]
    primary_scope: ClassVar[Scope]
    relations: ClassVar[Mapping[str, RelationSpec]] = MappingProxyType({})
    unique_fields: ClassVar[tuple[str, ...]] = ()
    unique_field_scopes: ClassVar[Mapping[str, Scope]] = MappingProxyType({})
    preconditions: ClassVar[tuple[Scope, ...]] = ()
    schedule: ClassVar[ScheduleShape | None] = None

    def validate_row(self, fields: Mapping[str, str], row_number: int) -> RowResult:
        return validate_row(self.row_schema, fields, row_number)

    @abstractmethod
    def persist(self, db: Session, rows: Sequence[ValidatedRow]) -> list[IngestionError]:
        """Write ``rows`` and return one error per row that could not be stored."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.entity_type.value}>"


class _RecordImporter(EntityImporter):
    """Entities that map one row to one record.

    The batch is inserted in a single transaction; when the store rejects
    it the batch is replayed row by row so only the offending
    rows are reported.
    """

    @abstractmethod
    def build_record(self, data: Mapping[str, Any]) -> Base:
        ...

    def persist(self, db: Session, rows: Sequence[ValidatedRow]) -> list[IngestionError]:
        if not rows:
            return []
        try:
            db.add_all([self.build_record(row.data) for row in rows])
            db.commit()
            return []
        except ROW_WRITE_ERRORS as e:
            db.rollback()
            logger.warning(
                f"{self.entity_type.value}: batch insert of {len(rows)} rows was rejected "
                f"({_describe(e)}), retrying row by row"
            )

        errors: list[IngestionError] = []
        for row in rows:
            try:
                db.add(self.build_record(row.data))
                db.commit()
            except ROW_WRITE_ERRORS as e:
                db.rollback()
                errors.append(_insert_failed(row, _describe(e)))
        return errors


class ClassImporter(_RecordImporter):
    entity_type = EntityType.CLASS_IMPORT
    expected_headers = ("class_name", "batch")
    row_schema = ClassRow
    primary_scope = Scope.CLASS
    unique_fields = ("class_name",)

    def build_record(self, data: Mapping[str, Any]) -> SchoolClass:
        return SchoolClass(class_name=data["class_name"], batch=data["batch"])


class SubjectImporter(_RecordImporter):
    entity_type = EntityType.SUBJECT_IMPORT
    expected_headers = ("subject_code", "subject_name")
    row_schema = SubjectRow
    primary_scope = Scope.SUBJECT
    unique_fields = ("subject_code",)

    def build_record(self, data: Mapping[str, Any]) -> Subject:
        return Subject(subject_code=data["subject_code"], subject_name=data["subject_name"])


class RoomImporter(_RecordImporter):
    entity_type = EntityType.ROOM_IMPORT
    expected_headers = ("room_number", "building_name", "floor_number")
    row_schema = RoomRow
    primary_scope = Scope.ROOM
    unique_fields = ("room_number",)

    def build_record(self, data: Mapping[str, Any]) -> Room:
        return Room(
            room_number=data["room_number"],
            building_name=data["building_name"],
            floor_number=data["floor_number"],
            geofence_coordinates=[],
        )


class TimetableImporter(_RecordImporter):
    entity_type = EntityType.TIMETABLE_IMPORT
    expected_headers = (
        "class_name",
        "teacher_id",
        "subject_code",
        "room_number",
        "day_of_week",
        "start_time",
        "end_time",
    )
    row_schema = TimetableRow
    primary_scope = Scope.TIMETABLE
    relations = MappingProxyType(
        {
            "class_name": RelationSpec(Scope.CLASS, "class_name"),
            "teacher_id": RelationSpec(Scope.TEACHER, "teacher_id"),
            "subject_code": RelationSpec(Scope.SUBJECT, "subject_code"),
            "room_number": RelationSpec(Scope.ROOM, "room_number"),
        }
    )
    preconditions = (Scope.CLASS, Scope.TEACHER, Scope.SUBJECT, Scope.ROOM)
    schedule = ScheduleShape()

    def build_record(self, data: Mapping[str, Any]) -> TimetableSlot:
        # Relation columns hold resolved ids by the time rows reach persist.
        return TimetableSlot(
            class_id=data["class_name"],
            teacher_id=data["teacher_id"],
            subject_id=data["subject_code"],
            room_id=data["room_number"],
            day_of_week=data["day_of_week"],
            start_time=data["start_time"],
            end_time=data["end_time"],
        )


class _AccountImporter(EntityImporter):
    """Entities that own a login: user + credential account + profile per row.

    Passwords for the whole batch are hashed up front; each chunk is then
    written in one all-or-nothing transaction.
    """

    role: ClassVar[str]
    unique_field_scopes = MappingProxyType({"email": Scope.USER})

    @abstractmethod
    def build_profile(self, data: Mapping[str, Any], user_id: str) -> Base:
        ...

    def persist(self, db: Session, rows: Sequence[ValidatedRow]) -> list[IngestionError]:
        if not rows:
            return []
        hashes = hash_passwords([row.data["password"] for row in rows])

        errors: list[IngestionError] = []
        for chunk_rows, chunk_hashes in zip(
            chunked(rows, TRANSACTION_CHUNK_SIZE), chunked(hashes, TRANSACTION_CHUNK_SIZE)
        ):
            try:
                users = [
                    User(id=new_id(), name=row.data["name"], email=row.data["email"], role=self.role)
                    for row in chunk_rows
                ]
                db.add_all(users)
                db.flush()
                db.add_all(
                    AuthAccount(user_id=user.id, password_hash=password_hash)
                    for user, password_hash in zip(users, chunk_hashes)
                )
                db.add_all(
                    self.build_profile(row.data, user.id)
                    for row, user in zip(chunk_rows, users)
                )
                db.commit()
            except ROW_WRITE_ERRORS as e:
                db.rollback()
                message = _describe(e)
                logger.warning(
                    f"{self.entity_type.value}: chunk of {len(chunk_rows)} rows rolled back: {message}"
                )
                errors.extend(_insert_failed(row, message) for row in chunk_rows)
        return errors


class StudentImporter(_AccountImporter):
    entity_type = EntityType.STUDENT_IMPORT
    expected_headers = (
        "registration_number",
        "name",
        "email",
        "password",
        "class_name",
        "enrollment_status",
    )
    row_schema = StudentRow
    primary_scope = Scope.STUDENT
    role = "student"
    relations = MappingProxyType({"class_name": RelationSpec(Scope.CLASS, "class_name")})
    unique_fields = ("registration_number", "email")
    preconditions = (Scope.CLASS,)

    def build_profile(self, data: Mapping[str, Any], user_id: str) -> Student:
        return Student(
            user_id=user_id,
            registration_number=data["registration_number"],
            class_id=data["class_name"],
            enrollment_status=data["enrollment_status"],
            face_vector=[],
        )


class TeacherImporter(_AccountImporter):
    entity_type = EntityType.TEACHER_IMPORT
    expected_headers = ("teacher_id", "name", "email", "password")
    row_schema = TeacherRow
    primary_scope = Scope.TEACHER
    role = "teacher"
    unique_fields = ("teacher_id", "email")

    def build_profile(self, data: Mapping[str, Any], user_id: str) -> Teacher:
        return Teacher(user_id=user_id, teacher_id=data["teacher_id"])


IMPORTERS: dict[EntityType, EntityImporter] = {
    importer.entity_type: importer
    for importer in (
        ClassImporter(),
        SubjectImporter(),
        RoomImporter(),
        StudentImporter(),
        TeacherImporter(),
        TimetableImporter(),
    )
}


def get_importer(entity_type: str | EntityType) -> EntityImporter | None:
    """Look up the importer for an entity type name; ``None`` if unknown."""
    try:
        return IMPORTERS[EntityType(entity_type)]
    except ValueError:
        return None


def entity_type_for_slug(slug: str) -> EntityType | None:
    """Accept ``students``, ``student``, ``student_import`` or ``STUDENT_IMPORT``."""
    cleaned = re.sub(r"[^a-z]", "_", slug.strip().lower())
    for candidate in (cleaned, f"{cleaned}_import", f"{cleaned.removesuffix('s')}_import"):
        for entity_type in EntityType:
            if entity_type.queue_name == candidate:
                return entity_type
    if cleaned in ("classes", "classes_import"):
        return EntityType.CLASS_IMPORT
    return None
