"""API routers"""

from . import executions, scheduler, monitoring

__all__ = ["executions", "scheduler", "monitoring"]
