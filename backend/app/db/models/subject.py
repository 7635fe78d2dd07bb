"""SQLAlchemy model for subject records."""

from sqlalchemy import Column, DateTime, String, func

from app.db.base import Base, new_id


class Subject(Base):
    __tablename__ = "subjects"

    id = Column(String(36), primary_key=True, default=new_id)
    subject_code = Column(String(64), nullable=False, unique=True)
    subject_name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
