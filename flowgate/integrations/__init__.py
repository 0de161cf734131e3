"""Clients for systems the engine talks to."""

from .task_client import ExternalTaskClient, TaskRequest, TaskStatus

__all__ = ["ExternalTaskClient", "TaskRequest", "TaskStatus"]
