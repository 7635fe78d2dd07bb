"""SQLAlchemy model for weekly timetable slots."""

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint, func

from app.db.base import Base, new_id

DAYS_OF_WEEK = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


class TimetableSlot(Base):
    __tablename__ = "timetable"

    id = Column(String(36), primary_key=True, default=new_id)
    class_id = Column(String(36), ForeignKey("classes.id"), nullable=False)
    teacher_id = Column(String(36), ForeignKey("teachers.id"), nullable=False)
    subject_id = Column(String(36), ForeignKey("subjects.id"), nullable=False)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False)
    day_of_week = Column(String(16), nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # A class cannot have two entries starting at the same day and time.
    __table_args__ = (
        UniqueConstraint("class_id", "day_of_week", "start_time", name="uq_timetable_class_slot"),
    )
