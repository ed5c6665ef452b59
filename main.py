"""
FlowForge API 主入口
"""
import uvicorn
from dotenv import load_dotenv

from flowforge.config import Settings, configure_logging

# 加载环境变量
load_dotenv()

settings = Settings.from_env()

# 配置日志
configure_logging(settings.log_level)

# 导入应用
from flowforge.api import app  # noqa: E402


if __name__ == "__main__":
    if settings.api_reload:
        # 开发模式
        uvicorn.run(
            "flowforge.api:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=True,
            log_level=settings.log_level.lower()
        )
    else:
        uvicorn.run(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower()
        )
