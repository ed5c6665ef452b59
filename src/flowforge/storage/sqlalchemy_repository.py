"""
SQLAlchemy 仓库实现
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker

from ..exceptions import StorageUnavailable
from ..models.workflow import Workflow, Node, Edge, WorkflowStatus, NodeType, ScheduledWorkflow
from ..models.execution import Run, RunStatus, RunMetrics, LogEntry, LogLevel
from .repository import WorkflowRepository, ExecutionRepository, check_run_fields
from .sqlalchemy_models import (
    Base, WorkflowRecord, WorkflowNodeRecord, RunRecord, LogRecord
)


logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite 会丢失时区信息，读回时补上 UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    async def initialize(self):
        """初始化数据库连接"""
        engine_options: Dict[str, Any] = {"echo": False, "pool_pre_ping": True}
        if not self.database_url.startswith("sqlite"):
            engine_options.update(pool_size=20, max_overflow=10)

        self.engine = create_async_engine(self.database_url, **engine_options)
        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailable("initialize", e)

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self, operation: str):
        """获取数据库会话，数据库错误统一转为 StorageUnavailable"""
        if self.async_session_maker is None:
            raise StorageUnavailable(operation, RuntimeError("database not initialized"))

        try:
            async with self.async_session_maker() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Database operation '{operation}' failed: {e}")
            raise StorageUnavailable(operation, e)


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy 工作流仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: Workflow) -> str:
        """保存工作流，已存在时版本号加一"""
        async with self.db.get_session("save_workflow") as session:
            existing = await session.get(WorkflowRecord, workflow.id)

            if existing is None:
                session.add(WorkflowRecord(
                    id=workflow.id,
                    name=workflow.name,
                    description=workflow.description,
                    version=workflow.version,
                    status=workflow.status.value,
                    user_id=workflow.user_id,
                    definition=self._workflow_to_dict(workflow),
                ))
            else:
                workflow.version = max(workflow.version, existing.version + 1)
                await session.execute(
                    update(WorkflowRecord)
                    .where(WorkflowRecord.id == workflow.id)
                    .values(
                        name=workflow.name,
                        description=workflow.description,
                        version=workflow.version,
                        status=workflow.status.value,
                        user_id=workflow.user_id,
                        definition=self._workflow_to_dict(workflow),
                        updated_at=datetime.now(timezone.utc)
                    )
                )
                # 节点删除后重建
                await session.execute(
                    delete(WorkflowNodeRecord).where(WorkflowNodeRecord.workflow_id == workflow.id)
                )

            for position, node in enumerate(workflow.nodes):
                session.add(WorkflowNodeRecord(
                    workflow_id=workflow.id,
                    position=position,
                    node_id=node.id,
                    node_type=node.type,
                    label=node.label,
                    configuration=node.config,
                ))

            await session.flush()
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        async with self.db.get_session("get_workflow") as session:
            record = await session.get(WorkflowRecord, workflow_id)
            if record is None:
                return None
            return self._db_to_workflow(record)

    async def list_active_scheduled(self) -> List[ScheduledWorkflow]:
        """活跃工作流与其第一个 schedule 节点配置"""
        async with self.db.get_session("list_active_scheduled") as session:
            result = await session.execute(
                select(WorkflowRecord, WorkflowNodeRecord.configuration)
                .join(WorkflowNodeRecord, WorkflowNodeRecord.workflow_id == WorkflowRecord.id)
                .where(
                    WorkflowRecord.status == WorkflowStatus.ACTIVE.value,
                    WorkflowNodeRecord.node_type == NodeType.SCHEDULE.value
                )
                .order_by(WorkflowRecord.created_at, WorkflowRecord.id, WorkflowNodeRecord.position)
            )

            scheduled: Dict[str, ScheduledWorkflow] = {}
            for record, configuration in result.all():
                if record.id in scheduled:
                    continue
                scheduled[record.id] = ScheduledWorkflow(
                    workflow=self._db_to_workflow(record),
                    schedule_config=dict(configuration or {})
                )
            return list(scheduled.values())

    def _workflow_to_dict(self, workflow: Workflow) -> Dict[str, Any]:
        """工作流对象转字典"""
        return {
            'nodes': [
                {
                    'id': node.id,
                    'type': node.type,
                    'label': node.label,
                    'config': node.config
                }
                for node in workflow.nodes
            ],
            'edges': [
                {
                    'id': edge.id,
                    'source': edge.source,
                    'target': edge.target,
                    'condition': edge.condition
                }
                for edge in workflow.edges
            ]
        }

    def _db_to_workflow(self, record: WorkflowRecord) -> Workflow:
        """数据库对象转工作流"""
        definition = record.definition or {}

        workflow = Workflow(
            id=record.id,
            name=record.name,
            version=record.version,
            status=WorkflowStatus(record.status),
            description=record.description,
            user_id=record.user_id,
            created_at=_as_utc(record.created_at) or datetime.now(timezone.utc),
            updated_at=_as_utc(record.updated_at) or datetime.now(timezone.utc)
        )

        for node_data in definition.get('nodes', []):
            workflow.nodes.append(Node(
                id=node_data['id'],
                type=node_data['type'],
                label=node_data.get('label', ''),
                config=node_data.get('config', {})
            ))

        for edge_data in definition.get('edges', []):
            workflow.edges.append(Edge(
                id=edge_data['id'],
                source=edge_data['source'],
                target=edge_data['target'],
                condition=edge_data.get('condition')
            ))

        return workflow


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy 执行仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def create_run(self, run: Run) -> str:
        """创建运行记录"""
        async with self.db.get_session("create_run") as session:
            session.add(RunRecord(
                id=run.id,
                workflow_id=run.workflow_id,
                workflow_version=run.workflow_version,
                status=run.status.value,
                triggered_by=run.triggered_by,
                trigger_payload=run.trigger_payload,
                metrics=run.metrics.to_dict(),
                error_message=run.error_message,
                started_at=run.started_at,
                completed_at=run.completed_at
            ))
            await session.flush()
            return run.id

    async def update_run(self, run_id: str, **fields: Any) -> bool:
        """部分更新运行记录"""
        check_run_fields(fields)
        values = dict(fields)
        if 'status' in values:
            values['status'] = values['status'].value
        if 'metrics' in values:
            values['metrics'] = values['metrics'].to_dict()

        async with self.db.get_session("update_run") as session:
            result = await session.execute(
                update(RunRecord).where(RunRecord.id == run_id).values(**values)
            )
            return result.rowcount > 0

    async def get_run(self, run_id: str) -> Optional[Run]:
        """获取运行记录"""
        async with self.db.get_session("get_run") as session:
            record = await session.get(RunRecord, run_id)
            if record is None:
                return None
            return self._db_to_run(record)

    async def count_runs(self, workflow_id: str) -> int:
        """统计工作流的运行次数"""
        async with self.db.get_session("count_runs") as session:
            result = await session.execute(
                select(func.count()).select_from(RunRecord).where(RunRecord.workflow_id == workflow_id)
            )
            return int(result.scalar_one())

    async def list_by_status(self, status: RunStatus, limit: int = 100) -> List[Run]:
        """根据状态列出运行记录"""
        async with self.db.get_session("list_runs_by_status") as session:
            result = await session.execute(
                select(RunRecord)
                .where(RunRecord.status == status.value)
                .order_by(RunRecord.started_at)
                .limit(limit)
            )
            return [self._db_to_run(record) for record in result.scalars().all()]

    async def append_log(self, entry: LogEntry) -> None:
        """追加运行日志"""
        async with self.db.get_session("append_log") as session:
            session.add(LogRecord(
                id=entry.id,
                run_id=entry.run_id,
                node_id=entry.node_id,
                level=entry.level.value,
                message=entry.message,
                timestamp=entry.timestamp
            ))

    async def list_logs(self, run_id: str) -> List[LogEntry]:
        """按时间顺序列出运行日志"""
        async with self.db.get_session("list_logs") as session:
            result = await session.execute(
                select(LogRecord)
                .where(LogRecord.run_id == run_id)
                .order_by(LogRecord.timestamp, LogRecord.seq)
            )
            return [
                LogEntry(
                    id=record.id,
                    run_id=record.run_id,
                    node_id=record.node_id,
                    level=LogLevel(record.level),
                    message=record.message,
                    timestamp=_as_utc(record.timestamp)
                )
                for record in result.scalars().all()
            ]

    def _db_to_run(self, record: RunRecord) -> Run:
        """数据库对象转运行记录"""
        metrics = record.metrics or {}
        return Run(
            id=record.id,
            workflow_id=record.workflow_id,
            workflow_version=record.workflow_version,
            status=RunStatus(record.status),
            triggered_by=record.triggered_by,
            trigger_payload=record.trigger_payload or {},
            metrics=RunMetrics(
                total_nodes=metrics.get('total_nodes', 0),
                completed_nodes=metrics.get('completed_nodes', 0),
                failed_nodes=metrics.get('failed_nodes', 0)
            ),
            error_message=record.error_message,
            started_at=_as_utc(record.started_at),
            completed_at=_as_utc(record.completed_at)
        )
