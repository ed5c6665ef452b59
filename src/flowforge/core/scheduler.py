"""
定时调度协调器

周期性地把活跃的 schedule 工作流同步为 APScheduler cron 任务，
并在触发时检查时间窗口与执行次数限制。
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..exceptions import ConfigurationError, InvalidCronExpressionError
from ..models.workflow import ScheduleConfig, ScheduledWorkflow
from ..models.execution import utcnow
from ..storage.repository import WorkflowRepository, ExecutionRepository
from .engine import WorkflowEngine


logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "flowforge:reconcile"

# 标准 cron 中 0 和 7 都是周日，APScheduler 的数字从周一开始
CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _weekday_number(token: str) -> int:
    """星期取值转为标准 cron 数字，7 保留以便区间 x-7 展开"""
    token = token.strip().lower()
    if token.isdigit():
        number = int(token)
        if number > 7:
            raise ValueError(f"day of week out of range: {token}")
        return number
    if token in CRON_WEEKDAYS:
        return CRON_WEEKDAYS.index(token)
    raise ValueError(f"unknown day of week: {token}")


def _convert_day_of_week(field: str) -> str:
    """
    把标准 cron 的星期字段转换为 APScheduler 的名称列表

    每一项（*、*/n、a-b、a-b/n、a/n、单个值）先展开成标准 cron 的
    星期数字集合，再输出逗号分隔的星期名称。
    """
    if field in ("*", "?"):
        return "*"

    days = set()
    for item in field.split(","):
        base, slash, step_text = item.partition("/")
        step = 1
        if slash:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid day of week step: {item}")
            step = int(step_text)

        if base in ("*", "?"):
            start, end = 0, 6
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start, end = _weekday_number(start_text), _weekday_number(end_text)
            if start > end:
                raise ValueError(f"invalid day of week range: {item}")
        else:
            start = _weekday_number(base)
            end = max(start, 6) if slash else start

        days.update(day % 7 for day in range(start, end + 1, step))

    return ",".join(CRON_WEEKDAYS[day] for day in sorted(days))


def build_cron_trigger(expression: str, timezone: str = "UTC") -> CronTrigger:
    """
    构建 cron 触发器

    支持 5 段（分 时 日 月 周）和 6 段（秒 分 时 日 月 周）格式。
    """
    parts = expression.split()
    if len(parts) not in (5, 6):
        raise InvalidCronExpressionError(expression, f"expected 5 or 6 fields, got {len(parts)}")

    if len(parts) == 5:
        parts = ["0"] + parts

    try:
        return CronTrigger(
            second=parts[0],
            minute=parts[1],
            hour=parts[2],
            day=parts[3],
            month=parts[4],
            day_of_week=_convert_day_of_week(parts[5]),
            timezone=timezone
        )
    except (ValueError, KeyError, TypeError) as e:
        raise InvalidCronExpressionError(expression, str(e))


def validate_schedule_config(config: Dict[str, Any], default_timezone: str = "UTC") -> ScheduleConfig:
    """解析并校验 schedule 节点配置"""
    schedule = ScheduleConfig.from_dict(config)
    build_cron_trigger(schedule.cron_expression, schedule.timezone or default_timezone)
    return schedule


@dataclass
class Subscription:
    """已注册的定时任务"""
    workflow_id: str
    workflow_name: str
    config: ScheduleConfig
    timezone: str
    job_id: str


class ScheduleReconciler:
    """定时工作流协调器"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        execution_repository: ExecutionRepository,
        engine: WorkflowEngine,
        interval_seconds: int = 300,
        default_timezone: str = "UTC",
        max_instances: int = 1,
        clock: Callable[[], datetime] = None,
        scheduler: AsyncIOScheduler = None
    ):
        self.workflow_repository = workflow_repository
        self.execution_repository = execution_repository
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.default_timezone = default_timezone
        self.max_instances = max_instances
        self.clock = clock or utcnow
        self.scheduler = scheduler or AsyncIOScheduler(timezone=default_timezone)

        self.is_running = False
        self._subscriptions: Dict[str, Subscription] = {}
        self._skip_reasons: Dict[str, str] = {}
        self._reconcile_lock = asyncio.Lock()
        self._quota_lock = asyncio.Lock()

    async def start(self):
        """启动调度器并立即同步一次"""
        if self.is_running:
            return

        self.is_running = True
        logger.info("Workflow scheduler starting...")

        if not self.scheduler.running:
            self.scheduler.start()

        await self.reconcile()

        self.scheduler.add_job(
            self.reconcile,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=RECONCILE_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )
        logger.info(f"Workflow scheduler started (reconcile every {self.interval_seconds}s)")

    async def stop(self):
        """停止调度器并移除所有定时任务"""
        if not self.is_running:
            return

        self.is_running = False
        for workflow_id in list(self._subscriptions):
            self.unschedule(workflow_id, "scheduler stopped")

        try:
            self.scheduler.remove_job(RECONCILE_JOB_ID)
        except JobLookupError:
            logger.debug("Reconcile job already removed")

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        self._skip_reasons.clear()
        logger.info("Workflow scheduler stopped")

    async def reconcile(self):
        """把定时任务集合与存储中的活跃工作流同步"""
        async with self._reconcile_lock:
            try:
                entries = await self.workflow_repository.list_active_scheduled()
            except Exception as e:
                logger.error(f"Failed to load scheduled workflows: {e}", exc_info=True)
                return

            seen = set()
            for entry in entries:
                workflow_id = entry.workflow.id
                seen.add(workflow_id)
                try:
                    await self._reconcile_workflow(entry)
                except Exception as e:
                    logger.error(f"Failed to schedule workflow {workflow_id}: {e}", exc_info=True)

            # 移除不再活跃或不再包含 schedule 节点的工作流
            for workflow_id in list(self._subscriptions):
                if workflow_id not in seen:
                    self.unschedule(workflow_id, "no longer active or scheduled")

            for workflow_id in list(self._skip_reasons):
                if workflow_id not in seen:
                    del self._skip_reasons[workflow_id]

    async def _reconcile_workflow(self, entry: ScheduledWorkflow):
        workflow = entry.workflow
        workflow_id = workflow.id

        try:
            config = ScheduleConfig.from_dict(entry.schedule_config)
        except ConfigurationError as e:
            if workflow_id in self._subscriptions:
                self.unschedule(workflow_id, "schedule configuration invalid")
            self._skip(workflow_id, logging.WARNING, f"Workflow {workflow_id} not scheduled: {e}")
            return

        now = self.clock()
        current = self._subscriptions.get(workflow_id)
        if current is not None:
            if current.config == config:
                reason = await self._constraint_reason(workflow_id, config, now)
                if reason:
                    self.unschedule(workflow_id, reason)
                    self._skip_reasons[workflow_id] = reason
                return
            self.unschedule(workflow_id, "schedule configuration changed")

        timezone = config.timezone or self.default_timezone
        try:
            trigger = build_cron_trigger(config.cron_expression, timezone)
        except InvalidCronExpressionError as e:
            self._skip(workflow_id, logging.ERROR, f"Workflow {workflow_id} not scheduled: {e}")
            return

        reason = await self._constraint_reason(workflow_id, config, now)
        if reason:
            self._skip(workflow_id, logging.INFO, reason)
            return

        job_id = f"workflow:{workflow_id}"
        self.scheduler.add_job(
            self.fire,
            trigger=trigger,
            id=job_id,
            args=[workflow_id],
            replace_existing=True,
            coalesce=True,
            max_instances=self.max_instances
        )
        self._subscriptions[workflow_id] = Subscription(
            workflow_id=workflow_id,
            workflow_name=workflow.name,
            config=config,
            timezone=timezone,
            job_id=job_id
        )
        self._skip_reasons.pop(workflow_id, None)
        logger.info(
            f"Workflow scheduled: {workflow_id} ({workflow.name}) "
            f"cron='{config.cron_expression}' timezone={timezone}"
        )

    async def _constraint_reason(
        self,
        workflow_id: str,
        config: ScheduleConfig,
        now: datetime
    ) -> Optional[str]:
        """时间窗口或执行次数不满足时返回原因"""
        if config.not_started(now):
            return f"Workflow {workflow_id} start date not reached ({config.start_date.isoformat()})"
        if config.expired(now):
            return f"Workflow {workflow_id} end date passed ({config.end_date.isoformat()})"
        if config.max_executions is not None:
            count = await self.execution_repository.count_runs(workflow_id)
            if config.quota_exhausted(count):
                return f"Workflow {workflow_id} max executions reached ({config.max_executions})"
        return None

    def _skip(self, workflow_id: str, level: int, message: str):
        """同一原因只在第一次按原级别记录"""
        if self._skip_reasons.get(workflow_id) == message:
            logger.debug(message)
            return
        self._skip_reasons[workflow_id] = message
        logger.log(level, message)

    async def fire(self, workflow_id: str):
        """定时任务触发时执行工作流，异常只记录不抛出"""
        try:
            async with self._quota_lock:
                subscription = self._subscriptions.get(workflow_id)
                if subscription is None:
                    logger.debug(f"Ignoring fire for unscheduled workflow {workflow_id}")
                    return

                logger.info(f"Executing scheduled workflow {workflow_id}")
                config = subscription.config
                now = self.clock()

                if config.expired(now):
                    self.unschedule(workflow_id, "end date reached")
                    return

                count = await self.execution_repository.count_runs(workflow_id)
                if config.quota_exhausted(count):
                    self.unschedule(workflow_id, "max executions reached")
                    return

                workflow = await self.workflow_repository.get(workflow_id)
                if workflow is None:
                    self.unschedule(workflow_id, "workflow no longer exists")
                    return

                payload = {
                    "scheduledAt": now.isoformat(),
                    "trigger": "schedule",
                    "executionCount": count + 1
                }
                run = await self.engine.prepare_run(workflow, payload, triggered_by="scheduler")

            result = await self.engine.execute_run(workflow, run)
            logger.info(
                f"Scheduled execution of workflow {workflow_id} finished: "
                f"run={result.run_id} status={result.status.value}"
            )
        except Exception as e:
            logger.error(f"Scheduled workflow execution failed: {workflow_id}: {e}", exc_info=True)

    def unschedule(self, workflow_id: str, reason: str = None) -> bool:
        """移除工作流的定时任务"""
        subscription = self._subscriptions.pop(workflow_id, None)
        if subscription is None:
            return False

        try:
            self.scheduler.remove_job(subscription.job_id)
        except JobLookupError:
            logger.warning(f"Scheduler job not found: {subscription.job_id}")

        suffix = f" ({reason})" if reason else ""
        logger.info(f"Workflow unscheduled: {workflow_id}{suffix}")
        return True

    def scheduled_workflow_ids(self) -> List[str]:
        return sorted(self._subscriptions)

    def get_subscription(self, workflow_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(workflow_id)

    def get_scheduled_jobs(self) -> List[Dict[str, Any]]:
        """已注册任务的概要信息"""
        jobs = []
        for workflow_id in self.scheduled_workflow_ids():
            subscription = self._subscriptions[workflow_id]
            job = self.scheduler.get_job(subscription.job_id)
            next_run_time = getattr(job, "next_run_time", None) if job else None
            jobs.append({
                "workflow_id": workflow_id,
                "workflow_name": subscription.workflow_name,
                "cron_expression": subscription.config.cron_expression,
                "timezone": subscription.timezone,
                "max_executions": subscription.config.max_executions,
                "next_run_time": next_run_time.isoformat() if next_run_time else None
            })
        return jobs
