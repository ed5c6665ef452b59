"""Core automation engine components"""

from .engine import WorkflowEngine
from .executors import NodeExecutor, build_executors
from .parser import WorkflowParser
from .scheduler import ScheduleReconciler, build_cron_trigger

__all__ = [
    "WorkflowEngine",
    "NodeExecutor",
    "build_executors",
    "WorkflowParser",
    "ScheduleReconciler",
    "build_cron_trigger"
]
