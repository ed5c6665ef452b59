"""
定时调度协调器测试
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from flowforge.core.scheduler import (
    ScheduleReconciler, build_cron_trigger, validate_schedule_config, RECONCILE_JOB_ID,
    _convert_day_of_week
)
from flowforge.exceptions import InvalidCronExpressionError, ConfigurationError, StorageUnavailable
from flowforge.models.execution import Run, RunStatus
from flowforge.models.workflow import Node, Edge, WorkflowStatus
from flowforge.storage.repository import InMemoryWorkflowRepository

from conftest import make_workflow


def scheduled_workflow(config, workflow_id="wf-1", status=WorkflowStatus.ACTIVE):
    return make_workflow(
        nodes=[
            Node(id="trigger", type="schedule", config=config),
            Node(id="after", type="condition"),
        ],
        edges=[Edge(source="trigger", target="after")],
        workflow_id=workflow_id,
        status=status
    )


@pytest.fixture
def reconciler(workflow_repo, execution_repo, engine, clock) -> ScheduleReconciler:
    return ScheduleReconciler(
        workflow_repository=workflow_repo,
        execution_repository=execution_repo,
        engine=engine,
        clock=clock,
        scheduler=AsyncIOScheduler(timezone="UTC")
    )


class TestCronTrigger:
    """cron 触发器构建测试"""

    def test_five_field_expression(self):
        trigger = build_cron_trigger("*/5 * * * *")

        assert isinstance(trigger, CronTrigger)
        start = datetime(2025, 6, 1, 12, 1, tzinfo=timezone.utc)
        assert trigger.get_next_fire_time(None, start) == datetime(2025, 6, 1, 12, 5, tzinfo=timezone.utc)

    def test_six_field_expression(self):
        trigger = build_cron_trigger("30 0 9 * * *")

        start = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert trigger.get_next_fire_time(None, start) == datetime(2025, 6, 2, 9, 0, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression,expected_day", [
        ("0 9 * * 1", 2),        # 周一
        ("0 9 * * 0", 8),        # 周日
        ("0 9 * * 7", 8),        # 周日
        ("0 9 * * 1-5", 2),
        ("0 9 * * 0-3", 2),
        ("0 9 * * sat", 7),
        ("0 9 * * */2", 3),      # 周日、周二、周四、周六
        ("0 9 * * 0-6/2", 3),
        ("0 9 * * 1-5/2", 2),    # 周一、周三、周五
        ("0 9 * * 5-7", 6),
        ("0 9 * * 3/2", 4),      # 周三、周五
    ])
    def test_standard_cron_weekdays(self, expression, expected_day):
        # 2025-06-01 是周日
        start = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
        next_fire = build_cron_trigger(expression).get_next_fire_time(None, start)

        assert next_fire == datetime(2025, 6, expected_day, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("field,expected", [
        ("*", "*"),
        ("*/2", "sun,tue,thu,sat"),
        ("0-6/2", "sun,tue,thu,sat"),
        ("7", "sun"),
        ("mon-wed,fri", "mon,tue,wed,fri"),
    ])
    def test_day_of_week_expansion(self, field, expected):
        assert _convert_day_of_week(field) == expected

    @pytest.mark.parametrize("field", ["6-1", "*/0", "8", "funday"])
    def test_day_of_week_rejects_invalid(self, field):
        with pytest.raises(ValueError):
            _convert_day_of_week(field)

    def test_timezone(self):
        trigger = build_cron_trigger("0 9 * * *", "Europe/Berlin")

        start = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
        next_fire = trigger.get_next_fire_time(None, start)
        assert next_fire.astimezone(timezone.utc) == datetime(2025, 6, 2, 7, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression", [
        "* * *",
        "* * * * * * *",
        "61 * * * *",
        "* * * * 9",
        "not a cron at all",
    ])
    def test_invalid_expressions(self, expression):
        with pytest.raises(InvalidCronExpressionError):
            build_cron_trigger(expression)

    def test_unknown_timezone(self):
        with pytest.raises(InvalidCronExpressionError):
            build_cron_trigger("0 9 * * *", "Mars/Olympus")

    def test_validate_schedule_config(self):
        config = validate_schedule_config({"cronExpression": "0 9 * * *", "maxExecutions": "5"})
        assert config.max_executions == 5

        with pytest.raises(ConfigurationError):
            validate_schedule_config({"timezone": "UTC"})


class TestReconcile:
    """同步流程测试"""

    async def test_subscribes_active_scheduled_workflow(self, reconciler, workflow_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *", "timezone": "Europe/Berlin"}))

        await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == ["wf-1"]
        job = reconciler.scheduler.get_job("workflow:wf-1")
        assert job is not None
        assert job.args == ("wf-1",)
        assert reconciler.get_subscription("wf-1").timezone == "Europe/Berlin"

        jobs = reconciler.get_scheduled_jobs()
        assert jobs[0]["cron_expression"] == "0 9 * * *"

    async def test_inactive_and_unscheduled_workflows_ignored(self, reconciler, workflow_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *"}, status=WorkflowStatus.DRAFT))
        await workflow_repo.save(make_workflow(nodes=[Node(id="a", type="delay")], workflow_id="wf-2"))

        await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []

    async def test_reconcile_is_idempotent(self, reconciler, workflow_repo, caplog):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *"}, workflow_id="ok"))
        await workflow_repo.save(scheduled_workflow({"cronExpression": "bad cron"}, workflow_id="bad"))
        await workflow_repo.save(scheduled_workflow(
            {"cronExpression": "0 9 * * *", "startDate": "2030-01-01T00:00:00Z"}, workflow_id="later"
        ))

        await reconciler.reconcile()
        first = reconciler.scheduled_workflow_ids()
        jobs_first = [job.id for job in reconciler.scheduler.get_jobs()]

        caplog.clear()
        with caplog.at_level(logging.DEBUG, logger="flowforge.core.scheduler"):
            await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == first == ["ok"]
        assert [job.id for job in reconciler.scheduler.get_jobs()] == jobs_first
        assert [r for r in caplog.records if r.levelno > logging.DEBUG] == []

    async def test_missing_cron_expression_skipped(self, reconciler, workflow_repo, caplog):
        await workflow_repo.save(scheduled_workflow({"timezone": "UTC"}))

        with caplog.at_level(logging.WARNING, logger="flowforge.core.scheduler"):
            await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []
        assert any("no cron expression" in r.getMessage() for r in caplog.records)

    async def test_invalid_cron_logged_as_error(self, reconciler, workflow_repo, caplog):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "99 * * * *"}))

        with caplog.at_level(logging.ERROR, logger="flowforge.core.scheduler"):
            await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []
        assert any("Invalid cron expression" in r.getMessage() for r in caplog.records)

    async def test_future_start_date_respected(self, reconciler, workflow_repo, clock):
        start = clock.now + timedelta(days=1)
        await workflow_repo.save(scheduled_workflow({
            "cronExpression": "0 9 * * *",
            "startDate": start.isoformat()
        }))

        await reconciler.reconcile()
        assert reconciler.scheduled_workflow_ids() == []

        clock.now = start + timedelta(minutes=1)
        await reconciler.reconcile()
        assert reconciler.scheduled_workflow_ids() == ["wf-1"]

    async def test_past_end_date_skipped(self, reconciler, workflow_repo, clock):
        await workflow_repo.save(scheduled_workflow({
            "cronExpression": "0 9 * * *",
            "endDate": (clock.now - timedelta(days=1)).isoformat()
        }))

        await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []

    async def test_quota_already_met_skipped(self, reconciler, workflow_repo, execution_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *", "maxExecutions": 2}))
        for _ in range(2):
            await execution_repo.create_run(Run(workflow_id="wf-1", status=RunStatus.COMPLETED))

        await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []

    async def test_deactivated_workflow_removed(self, reconciler, workflow_repo):
        workflow = scheduled_workflow({"cronExpression": "0 9 * * *"})
        await workflow_repo.save(workflow)
        await reconciler.reconcile()
        assert reconciler.scheduled_workflow_ids() == ["wf-1"]

        workflow.status = WorkflowStatus.INACTIVE
        await workflow_repo.save(workflow)
        await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []
        assert reconciler.scheduler.get_job("workflow:wf-1") is None

    async def test_changed_config_rescheduled(self, reconciler, workflow_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *"}))
        await reconciler.reconcile()

        await workflow_repo.save(scheduled_workflow({"cronExpression": "30 18 * * *"}))
        await reconciler.reconcile()

        assert reconciler.get_subscription("wf-1").config.cron_expression == "30 18 * * *"
        assert len(reconciler.scheduler.get_jobs()) == 1

    async def test_storage_failure_does_not_raise(self, execution_repo, engine, clock, caplog):
        class BrokenRepository(InMemoryWorkflowRepository):
            async def list_active_scheduled(self):
                raise StorageUnavailable("list_active_scheduled", RuntimeError("db down"))

        reconciler = ScheduleReconciler(
            workflow_repository=BrokenRepository(),
            execution_repository=execution_repo,
            engine=engine,
            clock=clock,
            scheduler=AsyncIOScheduler(timezone="UTC")
        )

        with caplog.at_level(logging.ERROR, logger="flowforge.core.scheduler"):
            await reconciler.reconcile()

        assert reconciler.scheduled_workflow_ids() == []
        assert any("Failed to load scheduled workflows" in r.getMessage() for r in caplog.records)


class TestFire:
    """定时触发测试"""

    async def test_fire_creates_run_with_schedule_payload(self, reconciler, workflow_repo, execution_repo, clock):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *"}))
        await reconciler.reconcile()

        await reconciler.fire("wf-1")

        runs = list(execution_repo.runs.values())
        assert len(runs) == 1
        run = runs[0]
        assert run.triggered_by == "scheduler"
        assert run.status == RunStatus.COMPLETED
        assert run.trigger_payload == {
            "scheduledAt": clock.now.isoformat(),
            "trigger": "schedule",
            "executionCount": 1
        }

    async def test_max_executions_one_removed_on_next_pass(self, reconciler, workflow_repo, execution_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "* * * * *", "maxExecutions": 1}))
        await reconciler.reconcile()
        assert reconciler.scheduled_workflow_ids() == ["wf-1"]

        await reconciler.fire("wf-1")
        assert await execution_repo.count_runs("wf-1") == 1

        await reconciler.reconcile()
        assert reconciler.scheduled_workflow_ids() == []

        # 再次触发不会产生新的运行
        await reconciler.fire("wf-1")
        assert await execution_repo.count_runs("wf-1") == 1

    async def test_fire_unschedules_when_quota_reached(self, reconciler, workflow_repo, execution_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "* * * * *", "maxExecutions": 2}))
        await reconciler.reconcile()

        await reconciler.fire("wf-1")
        await reconciler.fire("wf-1")
        await reconciler.fire("wf-1")

        assert await execution_repo.count_runs("wf-1") == 2
        assert reconciler.scheduled_workflow_ids() == []

    async def test_execution_count_increments(self, reconciler, workflow_repo, execution_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "* * * * *"}))
        await reconciler.reconcile()

        await reconciler.fire("wf-1")
        await reconciler.fire("wf-1")

        counts = sorted(run.trigger_payload["executionCount"] for run in execution_repo.runs.values())
        assert counts == [1, 2]

    async def test_fire_after_end_date_unschedules(self, reconciler, workflow_repo, execution_repo, clock):
        end = clock.now + timedelta(hours=1)
        await workflow_repo.save(scheduled_workflow({"cronExpression": "* * * * *", "endDate": end.isoformat()}))
        await reconciler.reconcile()

        clock.now = end + timedelta(seconds=1)
        await reconciler.fire("wf-1")

        assert await execution_repo.count_runs("wf-1") == 0
        assert reconciler.scheduled_workflow_ids() == []

    async def test_fire_errors_are_logged(self, reconciler, workflow_repo, execution_repo, caplog):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "* * * * *"}))
        await reconciler.reconcile()

        async def broken_count(workflow_id):
            raise StorageUnavailable("count_runs", RuntimeError("db down"))

        execution_repo.count_runs = broken_count

        with caplog.at_level(logging.ERROR, logger="flowforge.core.scheduler"):
            await reconciler.fire("wf-1")

        assert any("Scheduled workflow execution failed" in r.getMessage() for r in caplog.records)


class TestLifecycle:
    """启动与停止测试"""

    async def test_start_and_stop(self, reconciler, workflow_repo):
        await workflow_repo.save(scheduled_workflow({"cronExpression": "0 9 * * *"}))

        await reconciler.start()
        try:
            assert reconciler.is_running
            assert reconciler.scheduler.running
            assert reconciler.scheduler.get_job(RECONCILE_JOB_ID) is not None
            assert reconciler.scheduled_workflow_ids() == ["wf-1"]
        finally:
            await reconciler.stop()

        assert not reconciler.is_running
        assert reconciler.scheduled_workflow_ids() == []
