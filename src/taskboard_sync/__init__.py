"""Client-side live state synchronization for the task dashboard."""

from taskboard_sync.models import LLMInfo, Plan, Result, Step, Task, TaskStatus
from taskboard_sync.sync.session import DashboardSession

__all__ = ["DashboardSession", "LLMInfo", "Plan", "Result", "Step", "Task", "TaskStatus"]
