"""
Pytest 配置和公共 fixtures
"""
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional

import httpx
import pytest

from flowforge.core import WorkflowEngine, build_executors
from flowforge.exceptions import TransportFailure
from flowforge.integrations.mail import MailMessage, MailTransport, SmtpServer
from flowforge.models.workflow import Workflow, Node, Edge, WorkflowStatus
from flowforge.storage.repository import InMemoryWorkflowRepository, InMemoryExecutionRepository
from flowforge.storage.sqlalchemy_repository import DatabaseManager


class RecordingMailTransport(MailTransport):
    """记录发送的邮件，可模拟 SMTP 不可达"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[MailMessage] = []
        self.servers: List[Optional[SmtpServer]] = []

    async def send(self, message: MailMessage, server: Optional[SmtpServer] = None) -> str:
        if self.fail:
            raise TransportFailure("smtp.test:587", "connection refused")
        self.sent.append(message)
        self.servers.append(server)
        return f"<msg-{len(self.sent)}@test>"


class FrozenClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_workflow(
    nodes: List[Node],
    edges: List[Edge] = None,
    workflow_id: str = "wf-1",
    status: WorkflowStatus = WorkflowStatus.ACTIVE
) -> Workflow:
    """构建测试用工作流"""
    return Workflow(
        id=workflow_id,
        name=f"Workflow {workflow_id}",
        status=status,
        nodes=list(nodes),
        edges=list(edges or [])
    )


def echo_http_handler(request: httpx.Request) -> httpx.Response:
    """回显请求的 MockTransport 处理函数"""
    if request.url.path == "/missing":
        return httpx.Response(404, text="not found")
    return httpx.Response(200, json={"method": request.method, "body": request.content.decode()})


@pytest.fixture
def workflow_repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def execution_repo() -> InMemoryExecutionRepository:
    return InMemoryExecutionRepository()


@pytest.fixture
def mail_transport() -> RecordingMailTransport:
    return RecordingMailTransport()


@pytest.fixture
def engine(workflow_repo, execution_repo, mail_transport) -> WorkflowEngine:
    """使用内存存储和模拟传输的工作流引擎"""
    return WorkflowEngine(
        workflow_repository=workflow_repo,
        execution_repository=execution_repo,
        executors=build_executors(
            mail_transport=mail_transport,
            http_transport=httpx.MockTransport(echo_http_handler)
        )
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sample_workflow_dict() -> dict:
    """示例工作流定义"""
    return {
        "workflow": {
            "id": "daily-report",
            "name": "Daily report",
            "status": "active",
            "nodes": [
                {
                    "id": "trigger",
                    "type": "schedule",
                    "label": "Every morning",
                    "config": {"cronExpression": "0 9 * * 1-5", "maxExecutions": 3}
                },
                {
                    "id": "check",
                    "type": "condition",
                    "config": {"condition": "trigger == 'schedule'"}
                },
                {
                    "id": "notify",
                    "type": "email",
                    "config": {"to": "ops@example.com", "subject": "Report", "message": "Ready"}
                }
            ],
            "edges": [
                {"source": "trigger", "target": "check"},
                {"source": "check", "target": "notify"}
            ]
        }
    }


@pytest.fixture
async def test_database() -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    # 使用 SQLite 内存数据库进行测试
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
