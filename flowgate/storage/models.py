"""SQLAlchemy database models for the workflow engine."""

from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, ForeignKey, Index
from sqlalchemy.orm import relationship

from .database import Base
from ..models.core import utcnow


class ExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    definition = Column(JSON)  # Snapshot taken when the execution started
    context = Column(JSON, nullable=False)
    steps = Column(JSON, nullable=False)
    current_node = Column(String)
    next_nodes = Column(JSON, nullable=False)
    waiting_info = Column(JSON)
    waiting_task_id = Column(String, index=True)
    waiting_node_id = Column(String)
    waiting_timeout_at = Column(DateTime)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    node_visits = Column(Integer, nullable=False, default=0)
    error = Column(JSON)
    final_output = Column(JSON)
    extra = Column("metadata", JSON)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    logs = relationship("ExecutionLogModel", back_populates="execution")

    __table_args__ = (
        Index("ix_executions_status_timeout", "status", "waiting_timeout_at"),
    )


class ExecutionLogModel(Base):
    """Database model for execution audit log entries."""
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False, index=True)
    timestamp = Column(DateTime, default=utcnow)
    node_id = Column(String)
    event_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON)

    execution = relationship("ExecutionModel", back_populates="logs")


class ToolRegistryModel(Base):
    """Database model for registered tools."""
    __tablename__ = "tool_registry"

    name = Column(String, primary_key=True)
    description = Column(Text)
    function_module = Column(String, nullable=False)  # Module path where function is defined
    function_name = Column(String, nullable=False)    # Function name within the module
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
