"""
工作流执行 API 路由
"""
import logging
from typing import List

from fastapi import APIRouter, HTTPException, Depends, Query, status

from ..models import (
    ExecutionCreateRequest, ExecutionTriggerResponse, ExecutionDetailResponse,
    RunResponse, LogEntryResponse, SuccessResponse, RunStatusEnum
)
from ..dependencies import get_workflow_engine, get_execution_repository, get_current_user
from ...exceptions import WorkflowNotFoundError, StorageUnavailable
from ...models.execution import RunStatus


logger = logging.getLogger(__name__)
router = APIRouter()


def _storage_error(e: StorageUnavailable) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": "storage_unavailable",
            "message": str(e)
        }
    )


@router.post("", response_model=ExecutionTriggerResponse, status_code=status.HTTP_201_CREATED)
async def trigger_execution(
    request: ExecutionCreateRequest,
    engine=Depends(get_workflow_engine),
    current_user: str = Depends(get_current_user)
) -> ExecutionTriggerResponse:
    """触发工作流执行并等待结束"""
    try:
        result = await engine.trigger_execution(
            request.workflow_id,
            request.trigger_data,
            triggered_by=current_user
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": str(e)
            }
        )
    except StorageUnavailable as e:
        raise _storage_error(e)

    logger.info(
        f"Workflow executed: workflow={request.workflow_id} run={result.run_id} "
        f"user={current_user} status={result.status.value}"
    )

    return ExecutionTriggerResponse(
        run_id=result.run_id,
        status=result.status.value,
        error=result.error,
        output=result.output
    )


@router.get("", response_model=List[RunResponse])
async def list_executions(
    status_filter: RunStatusEnum = Query(RunStatusEnum.RUNNING, alias="status", description="运行状态"),
    limit: int = Query(20, ge=1, le=100, description="返回数量"),
    repository=Depends(get_execution_repository)
) -> List[RunResponse]:
    """按状态列出运行记录"""
    try:
        runs = await repository.list_by_status(RunStatus(status_filter.value), limit=limit)
    except StorageUnavailable as e:
        raise _storage_error(e)
    return [RunResponse.from_run(run) for run in runs]


@router.get("/{run_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    run_id: str,
    repository=Depends(get_execution_repository)
) -> ExecutionDetailResponse:
    """获取运行详情和日志"""
    try:
        run = await repository.get_run(run_id)
        if run is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "error": "not_found",
                    "message": f"Execution {run_id} not found"
                }
            )
        logs = await repository.list_logs(run_id)
    except StorageUnavailable as e:
        raise _storage_error(e)

    return ExecutionDetailResponse(
        **RunResponse.from_run(run).model_dump(),
        logs=[LogEntryResponse.from_entry(entry) for entry in logs]
    )


@router.post("/{run_id}/cancel", response_model=SuccessResponse)
async def cancel_execution(
    run_id: str,
    engine=Depends(get_workflow_engine),
    repository=Depends(get_execution_repository),
    current_user: str = Depends(get_current_user)
) -> SuccessResponse:
    """取消运行；已结束的运行不受影响"""
    try:
        run = await repository.get_run(run_id)
        if run is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "error": "not_found",
                    "message": f"Execution {run_id} not found"
                }
            )
        cancelled = await engine.cancel_execution(run_id)
    except StorageUnavailable as e:
        raise _storage_error(e)

    if cancelled:
        logger.info(f"Execution {run_id} cancelled by {current_user}")
        return SuccessResponse(message="Execution cancelled")
    return SuccessResponse(message=f"Execution already {run.status.value}")
