"""Built-in tools registered with every engine."""

from .task_poller import TASK_STATUS_POLLER, make_task_status_poller

__all__ = ["TASK_STATUS_POLLER", "make_task_status_poller"]
