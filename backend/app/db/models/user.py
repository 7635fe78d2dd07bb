"""Login identities shared by students and teachers."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func

from app.db.base import Base, new_id

USER_ROLES = ("student", "teacher", "admin")


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(320), nullable=False, unique=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    role = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class AuthAccount(Base):
    __tablename__ = "auth_accounts"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True)
    provider_id = Column(String(32), nullable=False, default="credential")
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
