"""
运行配置
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Optional


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass
class SmtpSettings:
    """SMTP 默认配置"""
    host: str = "smtp.gmail.com"
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = "noreply@flowforge.local"
    timeout: float = 10.0


@dataclass
class Settings:
    """引擎配置"""
    database_url: str = "sqlite+aiosqlite:///./flowforge.db"
    redis_url: Optional[str] = None
    reconcile_interval_seconds: int = 300
    scheduler_timezone: str = "UTC"
    schedule_max_instances: int = 1
    max_concurrent_executions: Optional[int] = None
    http_timeout_seconds: float = 30.0
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    recover_stale_runs: bool = True
    stale_run_minutes: int = 60
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """从环境变量读取配置"""
        smtp = SmtpSettings(
            host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            port=_get_int("SMTP_PORT", 587),
            username=os.getenv("SMTP_USER"),
            password=os.getenv("SMTP_PASSWORD"),
            sender=os.getenv("EMAIL_FROM", "noreply@flowforge.local"),
        )
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./flowforge.db"),
            redis_url=os.getenv("REDIS_URL") or None,
            reconcile_interval_seconds=_get_int("RECONCILE_INTERVAL_SECONDS", 300),
            scheduler_timezone=os.getenv("SCHEDULER_TIMEZONE", "UTC"),
            schedule_max_instances=_get_int("SCHEDULE_MAX_INSTANCES", 1),
            max_concurrent_executions=_get_int("MAX_CONCURRENT_EXECUTIONS", None),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            smtp=smtp,
            recover_stale_runs=_get_bool("RECOVER_STALE_RUNS", True),
            stale_run_minutes=_get_int("STALE_RUN_MINUTES", 60),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_get_int("API_PORT", 8000),
            api_reload=_get_bool("API_RELOAD", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
