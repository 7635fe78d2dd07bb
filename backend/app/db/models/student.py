"""SQLAlchemy model for student profiles."""

from sqlalchemy import Column, DateTime, ForeignKey, String, func

from app.db.base import Base, JSONType, new_id

ENROLLMENT_STATUSES = ("Pending", "Enrolled", "Failed")


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True)
    registration_number = Column(String(64), nullable=False, unique=True)
    class_id = Column(String(36), ForeignKey("classes.id"), nullable=False, index=True)
    face_vector = Column(JSONType, nullable=False, default=list)
    enrollment_status = Column(String(16), nullable=False, default="Pending")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
