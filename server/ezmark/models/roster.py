from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Table
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from ezmark.database import Base
from ezmark.models.ids import new_document_id


class_students = Table(
    "class_students",
    Base.metadata,
    Column("class_id", Integer, ForeignKey("classes.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), primary_key=True),
)


class Student(Base):
    """A student identified by the id written on the exam header"""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(24), unique=True, index=True, nullable=False, default=new_document_id)
    name = Column(String, nullable=False)
    student_id = Column(String, unique=True, index=True, nullable=False)
    teacher_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    classes = relationship("Class", secondary=class_students, back_populates="students")


class Class(Base):
    """Roster of students sitting an exam together"""
    __tablename__ = "classes"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(24), unique=True, index=True, nullable=False, default=new_document_id)
    name = Column(String, nullable=False)
    teacher_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    teacher = relationship("User")
    students = relationship(
        "Student",
        secondary=class_students,
        back_populates="classes",
        order_by="Student.id",
    )
