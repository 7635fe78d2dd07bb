"""Database models package."""
from app.db.models.room import Room
from app.db.models.school_class import SchoolClass
from app.db.models.student import Student
from app.db.models.subject import Subject
from app.db.models.teacher import Teacher
from app.db.models.timetable import TimetableSlot
from app.db.models.upload_job import JobStatus, UploadJob
from app.db.models.user import AuthAccount, User

__all__ = [
    "AuthAccount",
    "JobStatus",
    "Room",
    "SchoolClass",
    "Student",
    "Subject",
    "Teacher",
    "TimetableSlot",
    "UploadJob",
    "User",
]
