"""
FastAPI 依赖注入
"""
import logging
from typing import Dict, Any, Optional

from fastapi import HTTPException, status, Header

from ..core import WorkflowEngine, ScheduleReconciler
from ..integrations.cache import CacheService
from ..storage.repository import ExecutionRepository


logger = logging.getLogger(__name__)


# 全局实例，由应用生命周期填充
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state


def _require(key: str, name: str) -> Any:
    component = app_state.get(key)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": f"{name} not initialized"
            }
        )
    return component


def get_workflow_engine() -> WorkflowEngine:
    """获取工作流引擎实例"""
    return _require("engine", "Workflow engine")


def get_execution_repository() -> ExecutionRepository:
    """获取运行记录仓库"""
    return _require("execution_repo", "Execution repository")


def get_reconciler() -> ScheduleReconciler:
    """获取调度协调器实例"""
    return _require("reconciler", "Scheduler")


def get_cache() -> Optional[CacheService]:
    """缓存是可选组件"""
    return app_state.get("cache")


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """调用者身份由上游网关通过 X-User-Id 传入"""
    return x_user_id or "anonymous"
