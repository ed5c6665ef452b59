"""Workflow and execution models"""

from .workflow import (
    Workflow, Node, Edge, NodeType, WorkflowStatus,
    ScheduleConfig, ScheduledWorkflow
)
from .execution import (
    Run, RunStatus, RunMetrics, RunContext, NodeOutcome,
    LogEntry, LogLevel, ExecutionResult, WORKFLOW_LOG_NODE
)

__all__ = [
    "Workflow",
    "Node",
    "Edge",
    "NodeType",
    "WorkflowStatus",
    "ScheduleConfig",
    "ScheduledWorkflow",
    "Run",
    "RunStatus",
    "RunMetrics",
    "RunContext",
    "NodeOutcome",
    "LogEntry",
    "LogLevel",
    "ExecutionResult",
    "WORKFLOW_LOG_NODE"
]
