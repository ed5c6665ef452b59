"""
存储仓库接口定义
"""
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional, List, Dict, Any

from ..models.workflow import Workflow, WorkflowStatus, ScheduledWorkflow
from ..models.execution import Run, RunStatus, LogEntry


class WorkflowRepository(ABC):
    """工作流存储仓库接口"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        """保存工作流"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list_active_scheduled(self) -> List[ScheduledWorkflow]:
        """列出所有活跃且包含 schedule 节点的工作流"""
        pass


class ExecutionRepository(ABC):
    """运行记录与日志存储仓库接口"""

    @abstractmethod
    async def create_run(self, run: Run) -> str:
        """创建运行记录"""
        pass

    @abstractmethod
    async def update_run(self, run_id: str, **fields: Any) -> bool:
        """部分更新运行记录"""
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[Run]:
        """获取运行记录"""
        pass

    @abstractmethod
    async def count_runs(self, workflow_id: str) -> int:
        """统计工作流的运行次数"""
        pass

    @abstractmethod
    async def list_by_status(self, status: RunStatus, limit: int = 100) -> List[Run]:
        """根据状态列出运行记录"""
        pass

    @abstractmethod
    async def append_log(self, entry: LogEntry) -> None:
        """追加运行日志"""
        pass

    @abstractmethod
    async def list_logs(self, run_id: str) -> List[LogEntry]:
        """按时间顺序列出运行日志"""
        pass


RUN_UPDATABLE_FIELDS = {"status", "metrics", "error_message", "completed_at"}


def check_run_fields(fields: Dict[str, Any]):
    """只允许更新可变字段"""
    unknown = set(fields) - RUN_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Run fields cannot be updated: {sorted(unknown)}")


# 内存实现（用于测试和命令行）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}

    async def save(self, workflow: Workflow) -> str:
        existing = self.workflows.get(workflow.id)
        if existing is not None:
            workflow.version = max(workflow.version, existing.version + 1)
        self.workflows[workflow.id] = workflow
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        return self.workflows.get(workflow_id)

    async def list_active_scheduled(self) -> List[ScheduledWorkflow]:
        results = []
        for workflow in self.workflows.values():
            if workflow.status != WorkflowStatus.ACTIVE:
                continue
            node = workflow.schedule_node()
            if node is not None:
                results.append(ScheduledWorkflow(workflow=workflow, schedule_config=dict(node.config)))
        return results


class InMemoryExecutionRepository(ExecutionRepository):
    """内存执行仓库实现"""

    def __init__(self):
        self.runs: Dict[str, Run] = {}
        self.logs: List[LogEntry] = []

    async def create_run(self, run: Run) -> str:
        self.runs[run.id] = replace(run)
        return run.id

    async def update_run(self, run_id: str, **fields: Any) -> bool:
        check_run_fields(fields)
        run = self.runs.get(run_id)
        if run is None:
            return False
        self.runs[run_id] = replace(run, **fields)
        return True

    async def get_run(self, run_id: str) -> Optional[Run]:
        run = self.runs.get(run_id)
        return replace(run) if run else None

    async def count_runs(self, workflow_id: str) -> int:
        return sum(1 for run in self.runs.values() if run.workflow_id == workflow_id)

    async def list_by_status(self, status: RunStatus, limit: int = 100) -> List[Run]:
        results = [replace(run) for run in self.runs.values() if run.status == status]
        return results[:limit]

    async def append_log(self, entry: LogEntry) -> None:
        self.logs.append(entry)

    async def list_logs(self, run_id: str) -> List[LogEntry]:
        # sorted 是稳定排序，时间相同时保持插入顺序
        entries = [entry for entry in self.logs if entry.run_id == run_id]
        return sorted(entries, key=lambda entry: entry.timestamp)
