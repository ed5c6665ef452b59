"""
工作流执行引擎
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Any, Optional, Set

from ..exceptions import (
    CircularDependencyError, NodeExecutionError, StorageUnavailable, WorkflowNotFoundError
)
from ..integrations.cache import CacheService
from ..models.workflow import Workflow, Node
from ..models.execution import (
    Run, RunStatus, RunMetrics, RunContext, LogEntry, LogLevel,
    ExecutionResult, WORKFLOW_LOG_NODE, utcnow
)
from ..storage.repository import WorkflowRepository, ExecutionRepository
from .executors import NodeExecutor, DefaultNodeExecutor, build_executors


logger = logging.getLogger(__name__)

STATUS_CHANNEL = "workflow:executions"
STALE_RUN_MESSAGE = "Run interrupted before completion"


class WorkflowEngine:
    """工作流执行引擎"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        execution_repository: ExecutionRepository,
        executors: Dict[str, NodeExecutor] = None,
        cache: CacheService = None,
        max_concurrent_executions: Optional[int] = None
    ):
        self.workflow_repository = workflow_repository
        self.execution_repository = execution_repository
        self.cache = cache

        # 注册节点执行器
        self.node_executors: Dict[str, NodeExecutor] = (
            executors if executors is not None else build_executors()
        )
        self.default_executor = DefaultNodeExecutor()

        # 当前进程中正在执行的运行
        self._active_runs: Set[str] = set()
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_executions) if max_concurrent_executions else None
        )

    @property
    def active_run_ids(self) -> Set[str]:
        return set(self._active_runs)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active_runs

    async def trigger_execution(
        self,
        workflow_id: str,
        trigger_payload: Dict[str, Any] = None,
        triggered_by: str = "system"
    ) -> ExecutionResult:
        """加载工作流并执行"""
        workflow = await self.workflow_repository.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return await self.run(workflow, trigger_payload, triggered_by)

    async def run(
        self,
        workflow: Workflow,
        trigger_payload: Dict[str, Any] = None,
        triggered_by: str = "system"
    ) -> ExecutionResult:
        """执行一次工作流"""
        run = await self.prepare_run(workflow, trigger_payload, triggered_by)
        return await self.execute_run(workflow, run)

    async def prepare_run(
        self,
        workflow: Workflow,
        trigger_payload: Dict[str, Any] = None,
        triggered_by: str = "system"
    ) -> Run:
        """创建运行记录；失败时异常传给调用方

        配置了并发上限时先以 pending 创建，拿到执行槽位后才切换为 running。
        """
        run = Run(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            status=RunStatus.RUNNING if self._semaphore is None else RunStatus.PENDING,
            triggered_by=triggered_by or "system",
            trigger_payload=dict(trigger_payload or {}),
            metrics=RunMetrics(total_nodes=len(workflow.nodes))
        )

        await self.execution_repository.create_run(run)
        self._active_runs.add(run.id)

        try:
            await self._log(run.id, WORKFLOW_LOG_NODE, LogLevel.INFO, "Workflow execution started")
        except StorageUnavailable:
            self._active_runs.discard(run.id)
            raise

        logger.info(f"Workflow execution started: run={run.id} workflow={workflow.id}")
        await self._publish_status(run)
        return run

    async def execute_run(self, workflow: Workflow, run: Run) -> ExecutionResult:
        """执行已创建的运行并写入终态"""
        if self._semaphore is None:
            return await self._execute(workflow, run)
        async with self._semaphore:
            if self.is_active(run.id):
                await self._mark_running(run)
            return await self._execute(workflow, run)

    async def _mark_running(self, run: Run):
        """排队结束，状态切换为 running"""
        run.status = RunStatus.RUNNING
        try:
            await self.execution_repository.update_run(run.id, status=RunStatus.RUNNING)
        except StorageUnavailable as e:
            logger.error(f"Failed to mark run {run.id} as running: {e}")
            return

        # 写入期间被取消时恢复 cancelled 状态
        if not self.is_active(run.id):
            run.status = RunStatus.CANCELLED
            await self.execution_repository.update_run(run.id, status=RunStatus.CANCELLED)
            return
        await self._publish_status(run)

    async def _execute(self, workflow: Workflow, run: Run) -> ExecutionResult:
        context = RunContext(
            run_id=run.id,
            workflow_id=workflow.id,
            trigger_payload=dict(run.trigger_payload)
        )
        metrics = RunMetrics(total_nodes=len(workflow.nodes))
        error: Optional[str] = None

        try:
            finished = await self._walk(workflow, context, metrics)
        except CircularDependencyError as e:
            logger.error(f"Run {run.id}: {e}")
            error = str(e)
            finished = True
        except NodeExecutionError as e:
            logger.warning(f"Run {run.id}: {e}")
            metrics.failed_nodes += 1
            error = str(e)
            finished = True
        except StorageUnavailable as e:
            logger.error(f"Run {run.id} aborted: {e}")
            error = str(e)
            finished = True

        output = {node_id: outcome.to_dict() for node_id, outcome in context.outcomes.items()}

        # 已被取消的运行不再写终态
        if not finished or run.id not in self._active_runs:
            logger.info(f"Run {run.id} stopped after cancellation")
            run.status = RunStatus.CANCELLED
            run.metrics = metrics
            return ExecutionResult(run_id=run.id, status=RunStatus.CANCELLED, output=output)

        self._active_runs.discard(run.id)
        status = RunStatus.COMPLETED if error is None else RunStatus.FAILED

        run.status = status
        run.metrics = metrics
        run.error_message = error
        run.completed_at = utcnow()

        try:
            await self.execution_repository.update_run(
                run.id,
                status=status,
                metrics=metrics,
                error_message=error,
                completed_at=run.completed_at
            )
            if status == RunStatus.COMPLETED:
                await self._log(run.id, WORKFLOW_LOG_NODE, LogLevel.SUCCESS, "Workflow execution completed")
            else:
                await self._log(run.id, WORKFLOW_LOG_NODE, LogLevel.ERROR, f"Execution failed: {error}")
        except StorageUnavailable as e:
            logger.error(f"Failed to record final status of run {run.id}: {e}")

        duration = (run.completed_at - run.started_at).total_seconds()
        logger.info(
            f"Workflow execution {status.value}: run={run.id} workflow={workflow.id} "
            f"duration={duration:.3f}s"
        )
        await self._publish_status(run)

        return ExecutionResult(run_id=run.id, status=status, output=output, error=error)

    async def _walk(self, workflow: Workflow, context: RunContext, metrics: RunMetrics) -> bool:
        """按依赖顺序执行节点；被取消时返回 False"""
        # 触发节点按定义顺序先执行
        for node in workflow.trigger_nodes():
            if not self.is_active(context.run_id):
                return False
            await self._execute_node(node, context)
            metrics.completed_nodes += 1

        remaining = [node for node in workflow.nodes if not context.is_done(node.id)]
        while remaining:
            progress = False

            for node in remaining:
                sources = workflow.incoming_sources(node.id)
                if not all(context.is_done(source) for source in sources):
                    continue
                if not self.is_active(context.run_id):
                    return False
                await self._execute_node(node, context)
                metrics.completed_nodes += 1
                progress = True

            if not progress:
                raise CircularDependencyError(node.id for node in remaining)

            remaining = [node for node in workflow.nodes if not context.is_done(node.id)]

        return True

    async def _execute_node(self, node: Node, context: RunContext):
        """执行单个节点并记录结果"""
        run_id = context.run_id
        await self._log(run_id, node.id, LogLevel.INFO, f"Executing node: {node.display_name}")

        executor = self.node_executors.get(node.type, self.default_executor)
        try:
            outcome = await executor.execute(node, context)
        except Exception as e:
            logger.debug(f"Executor for node '{node.id}' raised", exc_info=True)
            await self._log(run_id, node.id, LogLevel.ERROR, f"Node failed: {e}")
            raise NodeExecutionError(node.id, str(e), e)

        context.record(node.id, outcome)

        if not outcome.success:
            message = outcome.error or "node reported failure"
            await self._log(run_id, node.id, LogLevel.ERROR, f"Node failed: {message}")
            raise NodeExecutionError(node.id, message)

        await self._log(run_id, node.id, LogLevel.SUCCESS, "Node executed successfully")

    async def cancel_execution(self, run_id: str) -> bool:
        """取消正在执行的运行；未在执行时什么也不做"""
        if run_id not in self._active_runs:
            return False

        self._active_runs.discard(run_id)
        await self.execution_repository.update_run(
            run_id,
            status=RunStatus.CANCELLED,
            completed_at=utcnow()
        )
        await self._log(run_id, WORKFLOW_LOG_NODE, LogLevel.INFO, "Execution cancelled by user")
        logger.info(f"Execution cancelled: {run_id}")

        run = await self.execution_repository.get_run(run_id)
        if run is not None:
            await self._publish_status(run)
        return True

    async def recover_stale_runs(self, older_than: timedelta = timedelta(hours=1)) -> int:
        """把本进程未跟踪的陈旧 pending/running 记录标记为失败，不重新执行"""
        cutoff = utcnow() - older_than
        recovered = 0

        candidates = []
        for status in (RunStatus.PENDING, RunStatus.RUNNING):
            candidates.extend(await self.execution_repository.list_by_status(status, limit=1000))

        for run in candidates:
            if run.id in self._active_runs or run.started_at >= cutoff:
                continue

            await self.execution_repository.update_run(
                run.id,
                status=RunStatus.FAILED,
                error_message=STALE_RUN_MESSAGE,
                completed_at=utcnow()
            )
            await self._log(run.id, WORKFLOW_LOG_NODE, LogLevel.ERROR, STALE_RUN_MESSAGE)
            logger.warning(f"Marked stale run {run.id} of workflow {run.workflow_id} as failed")
            recovered += 1

        return recovered

    async def _log(self, run_id: str, node_id: str, level: LogLevel, message: str):
        """写入运行日志"""
        await self.execution_repository.append_log(
            LogEntry(run_id=run_id, node_id=node_id, level=level, message=message)
        )

    async def _publish_status(self, run: Run):
        """缓存并广播运行状态，尽力而为"""
        if self.cache is None:
            return

        await self.cache.set(f"execution:{run.id}:status", run.status.value)
        await self.cache.publish(STATUS_CHANNEL, {
            "run_id": run.id,
            "workflow_id": run.workflow_id,
            "status": run.status.value,
            "timestamp": utcnow().isoformat()
        })
