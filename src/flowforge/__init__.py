"""
FlowForge - 自动化工作流引擎
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine
from .core.scheduler import ScheduleReconciler
from .core.parser import WorkflowParser
from .models.workflow import Workflow, Node, Edge
from .models.execution import Run, ExecutionResult

__all__ = [
    "WorkflowEngine",
    "ScheduleReconciler",
    "WorkflowParser",
    "Workflow",
    "Node",
    "Edge",
    "Run",
    "ExecutionResult"
]
