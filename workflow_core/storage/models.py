"""SQLAlchemy database models for workflow documents and execution history."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Float, Index
from .database import Base


class DocumentModel(Base):
    """Opaque JSON document stored under a key."""
    __tablename__ = "documents"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ExecutionHistoryModel(Base):
    """A finished execution; the full record is kept as JSON."""
    __tablename__ = "execution_history"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False)
    execution_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False)  # completed, failed, cancelled, timeout
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    duration_ms = Column(Float)
    record = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_execution_history_workflow_start", "workflow_id", "start_time"),
    )
