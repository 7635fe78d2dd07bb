"""SQLAlchemy model for class (cohort) records."""

from sqlalchemy import Column, DateTime, String, func

from app.db.base import Base, new_id


class SchoolClass(Base):
    __tablename__ = "classes"

    id = Column(String(36), primary_key=True, default=new_id)
    class_name = Column(String(128), nullable=False, unique=True)
    batch = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
