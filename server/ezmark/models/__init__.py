"""
Models package initialization
Import all models here to ensure they are registered with SQLAlchemy
"""

from ezmark.models.user import User
from ezmark.models.content import Exam
from ezmark.models.roster import Student, Class, class_students
from ezmark.models.schedule import Schedule

__all__ = [
    "User",
    "Exam",
    "Student",
    "Class",
    "class_students",
    "Schedule",
]
