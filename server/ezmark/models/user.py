from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from ezmark.database import Base
from ezmark.models.ids import new_document_id


class User(Base):
    """Teacher account owning exams, classes and schedules"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    document_id = Column(String(24), unique=True, index=True, nullable=False, default=new_document_id)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<User {self.username} ({self.document_id})>"
