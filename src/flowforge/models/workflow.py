"""
工作流定义模型
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional
from uuid import uuid4

from ..exceptions import ConfigurationError


class WorkflowStatus(Enum):
    """工作流状态"""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class NodeType(Enum):
    """已知节点类型"""
    SCHEDULE = "schedule"
    EMAIL = "email"
    HTTP_REQUEST = "http-request"
    DELAY = "delay"
    CONDITION = "condition"


@dataclass(frozen=True)
class Node:
    """工作流节点"""
    id: str
    type: str
    label: str = ""
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.label or self.id


@dataclass(frozen=True)
class Edge:
    """工作流边"""
    source: str
    target: str
    id: str = field(default_factory=lambda: str(uuid4()))
    condition: Optional[str] = None


@dataclass
class Workflow:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    version: int = 1
    status: WorkflowStatus = WorkflowStatus.DRAFT
    description: Optional[str] = None
    user_id: Optional[str] = None
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get_node(self, node_id: str) -> Optional[Node]:
        """根据ID获取节点"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming_sources(self, node_id: str) -> List[str]:
        """获取指向节点的所有源节点ID"""
        return [edge.source for edge in self.edges if edge.target == node_id]

    def trigger_nodes(self) -> List[Node]:
        """没有入边的节点，按定义顺序"""
        targets = {edge.target for edge in self.edges}
        return [node for node in self.nodes if node.id not in targets]

    def schedule_node(self) -> Optional[Node]:
        """第一个 schedule 类型节点"""
        for node in self.nodes:
            if node.type == NodeType.SCHEDULE.value:
                return node
        return None

    def validate(self) -> List[str]:
        """验证工作流定义的合法性"""
        errors = []

        # 检查节点ID唯一性
        node_ids = [node.id for node in self.nodes]
        seen = set()
        duplicates = set()
        for node_id in node_ids:
            if node_id in seen:
                duplicates.add(node_id)
            seen.add(node_id)
        if duplicates:
            errors.append(f"Duplicate node IDs found: {sorted(duplicates)}")

        # 检查边的合法性
        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"Edge source '{edge.source}' not found in nodes")
            if edge.target not in seen:
                errors.append(f"Edge target '{edge.target}' not found in nodes")

        return errors


def parse_datetime(value: Any, field_name: str) -> Optional[datetime]:
    """解析 ISO-8601 时间，无时区时按 UTC 处理"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {field_name} '{value}': {e}")
    else:
        raise ConfigurationError(f"Invalid {field_name} '{value}': expected ISO-8601 string")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ScheduleConfig:
    """schedule 节点上的调度配置"""
    cron_expression: str
    timezone: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_executions: Optional[int] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "ScheduleConfig":
        """从节点配置构建"""
        cron_expression = (config or {}).get("cronExpression")
        if not cron_expression or not isinstance(cron_expression, str):
            raise ConfigurationError("Schedule node has no cron expression")

        max_executions = config.get("maxExecutions")
        if max_executions in (None, "", 0):
            max_executions = None
        else:
            try:
                max_executions = int(max_executions)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Invalid maxExecutions '{max_executions}'")
            if max_executions < 0:
                raise ConfigurationError(f"Invalid maxExecutions '{max_executions}'")

        return cls(
            cron_expression=cron_expression.strip(),
            timezone=config.get("timezone") or None,
            start_date=parse_datetime(config.get("startDate"), "startDate"),
            end_date=parse_datetime(config.get("endDate"), "endDate"),
            max_executions=max_executions,
        )

    def not_started(self, now: datetime) -> bool:
        return self.start_date is not None and self.start_date > now

    def expired(self, now: datetime) -> bool:
        return self.end_date is not None and self.end_date < now

    def quota_exhausted(self, run_count: int) -> bool:
        return self.max_executions is not None and run_count >= self.max_executions


@dataclass
class ScheduledWorkflow:
    """活跃且包含 schedule 节点的工作流"""
    workflow: Workflow
    schedule_config: Dict[str, Any]
