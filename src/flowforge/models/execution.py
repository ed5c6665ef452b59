"""
工作流执行模型
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, Any, Optional, Mapping
from uuid import uuid4


WORKFLOW_LOG_NODE = "workflow"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(Enum):
    """运行状态"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class LogLevel(Enum):
    """运行日志级别"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class NodeOutcome:
    """节点执行结果，记录后不可变"""
    success: bool
    data: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success, "data": dict(self.data)}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class RunMetrics:
    """运行指标"""
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Run:
    """一次工作流运行记录"""
    workflow_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    workflow_version: int = 1
    status: RunStatus = RunStatus.PENDING
    triggered_by: str = "system"
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    metrics: RunMetrics = field(default_factory=RunMetrics)
    error_message: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "triggered_by": self.triggered_by,
            "trigger_payload": self.trigger_payload,
            "metrics": self.metrics.to_dict(),
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class LogEntry:
    """运行日志，只追加"""
    run_id: str
    node_id: str
    level: LogLevel
    message: str
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RunContext:
    """运行上下文，只属于一次运行"""
    run_id: str
    workflow_id: str
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)

    def record(self, node_id: str, outcome: NodeOutcome):
        """记录节点结果，每个节点只能记录一次"""
        if node_id in self.outcomes:
            raise ValueError(f"Outcome for node '{node_id}' already recorded")
        self.outcomes[node_id] = outcome

    def is_done(self, node_id: str) -> bool:
        return node_id in self.outcomes

    def expression_scope(self) -> Dict[str, Any]:
        """条件表达式可见的变量；载荷自身的键优先于 trigger 别名"""
        payload = dict(self.trigger_payload)
        scope = {"trigger": payload, "payload": payload}
        scope.update(payload)
        scope["nodes"] = {
            node_id: outcome.to_dict() for node_id, outcome in self.outcomes.items()
        }
        return scope


@dataclass
class ExecutionResult:
    """引擎返回值"""
    run_id: str
    status: RunStatus
    output: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
        }
