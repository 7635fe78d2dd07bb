"""SQLAlchemy model for teacher profiles."""

from sqlalchemy import Column, DateTime, ForeignKey, String, func

from app.db.base import Base, new_id


class Teacher(Base):
    __tablename__ = "teachers"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True)
    teacher_id = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
