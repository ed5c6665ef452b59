"""
FastAPI 应用主文件
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Settings
from ..core import WorkflowEngine, ScheduleReconciler, build_executors
from ..integrations import CacheService, SmtpMailTransport
from ..storage import DatabaseManager, SQLAlchemyWorkflowRepository, SQLAlchemyExecutionRepository
from .dependencies import app_state
from .middleware import RequestLoggingMiddleware
from .routers import executions, scheduler, monitoring


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting FlowForge API...")
    settings = Settings.from_env()

    # 初始化数据库
    db_manager = DatabaseManager(settings.database_url)
    await db_manager.initialize()

    workflow_repo = SQLAlchemyWorkflowRepository(db_manager)
    execution_repo = SQLAlchemyExecutionRepository(db_manager)

    cache = CacheService(settings.redis_url)
    await cache.startup()

    engine = WorkflowEngine(
        workflow_repository=workflow_repo,
        execution_repository=execution_repo,
        executors=build_executors(
            mail_transport=SmtpMailTransport(settings.smtp),
            smtp_settings=settings.smtp,
            http_timeout=settings.http_timeout_seconds
        ),
        cache=cache,
        max_concurrent_executions=settings.max_concurrent_executions
    )

    if settings.recover_stale_runs:
        recovered = await engine.recover_stale_runs(timedelta(minutes=settings.stale_run_minutes))
        if recovered:
            logger.warning(f"Recovered {recovered} stale runs")

    reconciler = ScheduleReconciler(
        workflow_repository=workflow_repo,
        execution_repository=execution_repo,
        engine=engine,
        interval_seconds=settings.reconcile_interval_seconds,
        default_timezone=settings.scheduler_timezone,
        max_instances=settings.schedule_max_instances
    )
    await reconciler.start()

    app_state.update({
        "settings": settings,
        "db_manager": db_manager,
        "workflow_repo": workflow_repo,
        "execution_repo": execution_repo,
        "cache": cache,
        "engine": engine,
        "reconciler": reconciler
    })

    logger.info("FlowForge API started successfully")

    yield

    logger.info("Shutting down FlowForge API...")

    await reconciler.stop()
    await cache.shutdown()
    await db_manager.close()
    app_state.clear()

    logger.info("FlowForge API shut down successfully")


app = FastAPI(
    title="FlowForge API",
    description="自动化工作流执行与定时调度 API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])
app.include_router(scheduler.router, prefix="/api/v1/scheduler", tags=["scheduler"])
app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """全局异常处理器"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": getattr(request.state, "request_id", None)
        }
    )


@app.get("/", tags=["root"])
async def root():
    """API根路径"""
    return {
        "name": "FlowForge API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "health": "/api/v1/monitoring/health"
    }
