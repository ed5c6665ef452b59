"""
监控 API 路由
"""
import logging

from fastapi import APIRouter, Depends

from ... import __version__
from ...exceptions import StorageUnavailable
from ..models import HealthCheckResponse
from ..dependencies import get_workflow_engine, get_cache, get_app_state


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    engine=Depends(get_workflow_engine),
    cache=Depends(get_cache)
) -> HealthCheckResponse:
    """健康检查"""
    checks = {}

    # 检查数据库连接
    try:
        await engine.execution_repository.count_runs("__health__")
        checks["database"] = True
    except StorageUnavailable as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    reconciler = get_app_state().get("reconciler")
    checks["scheduler"] = bool(reconciler and reconciler.is_running)
    checks["cache"] = cache is not None

    return HealthCheckResponse(
        status="healthy" if checks["database"] else "unhealthy",
        version=__version__,
        checks=checks,
        active_runs=len(engine.active_run_ids)
    )
