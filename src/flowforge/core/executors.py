"""
节点执行器
"""
import asyncio
import json
import logging
import time
from typing import Dict, Any, Optional

import httpx

from ..config import SmtpSettings
from ..exceptions import MissingConfigurationError, TransportFailure, ExpressionError
from ..integrations.mail import MailMessage, MailTransport, SmtpMailTransport, SmtpServer
from ..models.workflow import Node, NodeType
from ..models.execution import RunContext, NodeOutcome, utcnow
from .expression import evaluate_condition


logger = logging.getLogger(__name__)


class NodeExecutor:
    """节点执行器基类"""

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        """执行节点"""
        raise NotImplementedError


class ScheduleNodeExecutor(NodeExecutor):
    """schedule 节点：只记录触发信息"""

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        payload = context.trigger_payload
        return NodeOutcome(
            success=True,
            data={
                "timestamp": payload.get("scheduledAt") or utcnow().isoformat(),
                "executionCount": payload.get("executionCount") or 1
            }
        )


class EmailNodeExecutor(NodeExecutor):
    """邮件节点执行器"""

    REQUIRED_KEYS = ("to", "subject", "message")

    def __init__(self, transport: MailTransport = None, smtp_settings: SmtpSettings = None):
        self.smtp_settings = smtp_settings or SmtpSettings()
        self.transport = transport or SmtpMailTransport(self.smtp_settings)

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        config = node.config or {}
        missing = [key for key in self.REQUIRED_KEYS if not config.get(key)]
        if missing:
            raise MissingConfigurationError(node.id, missing)

        message = MailMessage(
            sender=config.get("fromEmail") or self.smtp_settings.sender,
            to=config["to"],
            subject=config["subject"],
            text=config["message"],
            html=config.get("htmlMessage")
        )

        try:
            message_id = await self.transport.send(message, self._server_for(node.id, config))
        except TransportFailure as e:
            # 邮件不可达时降级为模拟发送
            logger.warning(f"Email simulation for node '{node.id}' (SMTP unavailable): {e}")
            return NodeOutcome(
                success=True,
                data={
                    "messageId": f"sim-{int(time.time() * 1000)}",
                    "to": message.to,
                    "subject": message.subject,
                    "sentAt": utcnow().isoformat(),
                    "simulated": True
                }
            )

        return NodeOutcome(
            success=True,
            data={
                "messageId": message_id,
                "to": message.to,
                "subject": message.subject,
                "sentAt": utcnow().isoformat()
            }
        )

    def _server_for(self, node_id: str, config: Dict[str, Any]) -> Optional[SmtpServer]:
        """节点级 SMTP 覆盖；没有覆盖时使用默认服务器"""
        overrides = ("smtpHost", "smtpPort", "fromEmail", "password")
        if not any(config.get(key) for key in overrides):
            return None

        try:
            port = int(config.get("smtpPort") or self.smtp_settings.port)
        except (TypeError, ValueError):
            raise MissingConfigurationError(node_id, ["smtpPort"])

        return SmtpServer(
            host=config.get("smtpHost") or self.smtp_settings.host,
            port=port,
            username=config.get("fromEmail") or self.smtp_settings.username,
            password=config.get("password") or self.smtp_settings.password
        )


class HttpRequestNodeExecutor(NodeExecutor):
    """HTTP 请求节点执行器"""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport = None):
        self.timeout = timeout
        self.transport = transport

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        config = node.config or {}
        url = config.get("url")
        if not url:
            raise MissingConfigurationError(node.id, ["url"])

        method = str(config.get("method") or "GET").upper()
        headers = {"Content-Type": "application/json"}
        headers.update(config.get("headers") or {})

        content = None
        body = config.get("body")
        if body and method != "GET":
            content = body if isinstance(body, str) else json.dumps(body)

        timeout = float(config.get("timeout") or self.timeout)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, content=content)
        except httpx.RequestError as e:
            raise TransportFailure(url, str(e) or type(e).__name__, e)

        success = response.is_success
        return NodeOutcome(
            success=success,
            data={
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "headers": dict(response.headers),
                "body": response.text
            },
            error=None if success else f"HTTP {response.status_code}"
        )


class DelayNodeExecutor(NodeExecutor):
    """延时节点执行器"""

    DEFAULT_DELAY_MS = 1000

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        delay_ms = (node.config or {}).get("delay") or self.DEFAULT_DELAY_MS
        await asyncio.sleep(float(delay_ms) / 1000)
        return NodeOutcome(
            success=True,
            data={"delayed": delay_ms, "timestamp": utcnow().isoformat()}
        )


class ConditionNodeExecutor(NodeExecutor):
    """条件节点执行器，求值失败时结果为 False"""

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        condition = (node.config or {}).get("condition") or "true"

        try:
            result = evaluate_condition(condition, context.expression_scope())
        except ExpressionError as e:
            logger.debug(f"Condition on node '{node.id}' evaluated to false: {e}")
            result = False

        return NodeOutcome(
            success=True,
            data={"condition": condition, "result": result, "timestamp": utcnow().isoformat()}
        )


class DefaultNodeExecutor(NodeExecutor):
    """未知类型节点"""

    async def execute(self, node: Node, context: RunContext) -> NodeOutcome:
        return NodeOutcome(success=True, data={"message": f"Node {node.type} executed"})


def build_executors(
    mail_transport: MailTransport = None,
    smtp_settings: SmtpSettings = None,
    http_timeout: float = 30.0,
    http_transport: httpx.AsyncBaseTransport = None
) -> Dict[str, NodeExecutor]:
    """按节点类型注册执行器"""
    return {
        NodeType.SCHEDULE.value: ScheduleNodeExecutor(),
        NodeType.EMAIL.value: EmailNodeExecutor(mail_transport, smtp_settings),
        NodeType.HTTP_REQUEST.value: HttpRequestNodeExecutor(http_timeout, http_transport),
        NodeType.DELAY.value: DelayNodeExecutor(),
        NodeType.CONDITION.value: ConditionNodeExecutor(),
    }
