"""Database models and storage layer."""

from .database import Base, build_engine, create_session_factory, create_tables, drop_tables
from .models import ExecutionModel, ExecutionLogModel, ToolRegistryModel

__all__ = [
    "Base",
    "build_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "ExecutionModel",
    "ExecutionLogModel",
    "ToolRegistryModel",
]
