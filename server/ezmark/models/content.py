from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from ezmark.database import Base
from ezmark.models.ids import new_document_id


class Exam(Base):
    """Exam paper designed in the editor; exam_data holds the component layout"""
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(24), unique=True, index=True, nullable=False, default=new_document_id)
    project_name = Column(String, nullable=False)
    exam_data = Column(JSON, nullable=False, default=dict)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User")
