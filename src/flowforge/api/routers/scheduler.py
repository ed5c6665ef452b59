"""
调度器 API 路由
"""
import logging

from fastapi import APIRouter, Depends

from ..models import SchedulerStatusResponse, ScheduledJobInfo
from ..dependencies import get_reconciler


logger = logging.getLogger(__name__)
router = APIRouter()


def _status(reconciler) -> SchedulerStatusResponse:
    return SchedulerStatusResponse(
        running=reconciler.is_running,
        interval_seconds=reconciler.interval_seconds,
        scheduled_workflow_ids=reconciler.scheduled_workflow_ids(),
        jobs=[ScheduledJobInfo(**job) for job in reconciler.get_scheduled_jobs()]
    )


@router.get("", response_model=SchedulerStatusResponse)
async def get_scheduler_status(reconciler=Depends(get_reconciler)) -> SchedulerStatusResponse:
    """已调度的工作流"""
    return _status(reconciler)


@router.post("/reconcile", response_model=SchedulerStatusResponse)
async def reconcile_now(reconciler=Depends(get_reconciler)) -> SchedulerStatusResponse:
    """立即执行一次同步"""
    await reconciler.reconcile()
    logger.info("Manual reconcile pass completed")
    return _status(reconciler)
