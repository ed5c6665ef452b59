"""
API 请求和响应模型
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, ConfigDict

from ..models.execution import Run, LogEntry


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunStatusEnum(str, Enum):
    """运行状态枚举（API）"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# 执行相关模型

class ExecutionCreateRequest(BaseModel):
    """触发执行请求"""
    workflow_id: str = Field(..., alias="workflowId", description="工作流ID")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, alias="triggerData", description="触发数据")

    model_config = ConfigDict(populate_by_name=True)


class RunMetricsInfo(BaseModel):
    """运行指标"""
    total_nodes: int = Field(0, description="节点总数")
    completed_nodes: int = Field(0, description="成功节点数")
    failed_nodes: int = Field(0, description="失败节点数")


class RunResponse(BaseModel):
    """运行记录响应"""
    id: str = Field(..., description="运行ID")
    workflow_id: str = Field(..., description="工作流ID")
    workflow_version: int = Field(..., description="工作流版本")
    status: RunStatusEnum = Field(..., description="运行状态")
    triggered_by: str = Field(..., description="触发者")
    trigger_payload: Dict[str, Any] = Field(default_factory=dict, description="触发数据")
    metrics: RunMetricsInfo = Field(default_factory=RunMetricsInfo, description="运行指标")
    error_message: Optional[str] = Field(None, description="错误信息")
    started_at: datetime = Field(..., description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="结束时间")

    @classmethod
    def from_run(cls, run: Run) -> "RunResponse":
        return cls(
            id=run.id,
            workflow_id=run.workflow_id,
            workflow_version=run.workflow_version,
            status=run.status.value,
            triggered_by=run.triggered_by,
            trigger_payload=run.trigger_payload,
            metrics=RunMetricsInfo(**run.metrics.to_dict()),
            error_message=run.error_message,
            started_at=run.started_at,
            completed_at=run.completed_at
        )


class LogEntryResponse(BaseModel):
    """运行日志"""
    id: str = Field(..., description="日志ID")
    node_id: str = Field(..., description="节点ID或 workflow")
    level: str = Field(..., description="日志级别")
    message: str = Field(..., description="日志内容")
    timestamp: datetime = Field(..., description="时间戳")

    @classmethod
    def from_entry(cls, entry: LogEntry) -> "LogEntryResponse":
        return cls(
            id=entry.id,
            node_id=entry.node_id,
            level=entry.level.value,
            message=entry.message,
            timestamp=entry.timestamp
        )


class ExecutionDetailResponse(RunResponse):
    """运行详情响应"""
    logs: List[LogEntryResponse] = Field(default_factory=list, description="运行日志")


class ExecutionTriggerResponse(BaseModel):
    """触发执行响应"""
    run_id: str = Field(..., description="运行ID")
    status: RunStatusEnum = Field(..., description="运行状态")
    error: Optional[str] = Field(None, description="错误信息")
    output: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="各节点结果")


# 调度相关模型

class ScheduledJobInfo(BaseModel):
    """定时任务信息"""
    workflow_id: str = Field(..., description="工作流ID")
    workflow_name: str = Field("", description="工作流名称")
    cron_expression: str = Field(..., description="cron 表达式")
    timezone: str = Field(..., description="时区")
    max_executions: Optional[int] = Field(None, description="最大执行次数")
    next_run_time: Optional[str] = Field(None, description="下次触发时间")


class SchedulerStatusResponse(BaseModel):
    """调度器状态响应"""
    running: bool = Field(..., description="是否运行中")
    interval_seconds: int = Field(..., description="同步间隔（秒）")
    scheduled_workflow_ids: List[str] = Field(default_factory=list, description="已调度工作流")
    jobs: List[ScheduledJobInfo] = Field(default_factory=list, description="定时任务")


# 通用模型

class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = Field(True, description="是否成功")
    message: Optional[str] = Field(None, description="消息")


class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态", examples=["healthy", "unhealthy"])
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(default_factory=_now, description="时间戳")
    checks: Dict[str, bool] = Field(default_factory=dict, description="各组件检查结果")
    active_runs: int = Field(0, description="进行中的运行数")
