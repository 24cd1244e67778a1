from loguru import logger
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, delete, event
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from ezmark.database import Base
from ezmark.models.ids import new_document_id
from ezmark.models.content import Exam
from ezmark.models.roster import Class

logger = logger.bind(module="models.schedule")


class Schedule(Base):
    """One exam sitting of one class, carrying the grading pipeline result"""
    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(24), unique=True, index=True, nullable=False, default=new_document_id)
    name = Column(String, nullable=False)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False)
    class_id = Column(Integer, ForeignKey("classes.id"), nullable=False)
    teacher_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    result = Column(JSON, nullable=True)  # ScheduleResult, camelCase
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships (one-directional so deleting a parent never nulls our FKs)
    exam = relationship("Exam")
    klass = relationship("Class")
    teacher = relationship("User")


def _delete_schedules(connection, column, parent_id: int, label: str) -> int:
    outcome = connection.execute(delete(Schedule.__table__).where(column == parent_id))
    count = outcome.rowcount or 0
    logger.info(f"Deleted {count} schedule(s) referencing {label} (ID: {parent_id})")
    return count


@event.listens_for(Class, "before_delete")
def _cascade_class_schedules(mapper, connection, target):
    _delete_schedules(connection, Schedule.__table__.c.class_id, target.id, "class")


@event.listens_for(Exam, "before_delete")
def _cascade_exam_schedules(mapper, connection, target):
    _delete_schedules(connection, Schedule.__table__.c.exam_id, target.id, "exam")
