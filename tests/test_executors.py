"""
节点执行器测试
"""
import json

import httpx
import pytest

from flowforge.config import SmtpSettings
from flowforge.core.executors import (
    ScheduleNodeExecutor, EmailNodeExecutor, HttpRequestNodeExecutor,
    DelayNodeExecutor, ConditionNodeExecutor, DefaultNodeExecutor
)
from flowforge.exceptions import MissingConfigurationError, TransportFailure
from flowforge.models.execution import RunContext, NodeOutcome
from flowforge.models.workflow import Node

from conftest import RecordingMailTransport


@pytest.fixture
def context():
    return RunContext(run_id="run-1", workflow_id="wf-1", trigger_payload={"amount": 42})


class TestScheduleNodeExecutor:
    """schedule 节点测试"""

    async def test_uses_trigger_payload(self):
        context = RunContext(
            run_id="run-1",
            workflow_id="wf-1",
            trigger_payload={"scheduledAt": "2025-06-01T09:00:00+00:00", "executionCount": 4}
        )
        outcome = await ScheduleNodeExecutor().execute(Node(id="s", type="schedule"), context)

        assert outcome.success
        assert outcome.data["timestamp"] == "2025-06-01T09:00:00+00:00"
        assert outcome.data["executionCount"] == 4

    async def test_defaults_for_manual_trigger(self, context):
        outcome = await ScheduleNodeExecutor().execute(Node(id="s", type="schedule"), context)

        assert outcome.success
        assert outcome.data["executionCount"] == 1
        assert outcome.data["timestamp"]


class TestEmailNodeExecutor:
    """邮件节点测试"""

    CONFIG = {"to": "ops@example.com", "subject": "Hello", "message": "Body"}

    async def test_sends_through_transport(self, context):
        transport = RecordingMailTransport()
        executor = EmailNodeExecutor(transport, SmtpSettings(sender="bot@example.com"))

        outcome = await executor.execute(Node(id="mail", type="email", config=self.CONFIG), context)

        assert outcome.success
        assert outcome.data["messageId"] == "<msg-1@test>"
        assert "simulated" not in outcome.data
        message = transport.sent[0]
        assert message.sender == "bot@example.com"
        assert message.to == "ops@example.com"
        assert message.text == "Body"
        # 没有节点级覆盖时使用默认服务器
        assert transport.servers == [None]

    async def test_node_level_smtp_override(self, context):
        transport = RecordingMailTransport()
        config = dict(self.CONFIG, smtpHost="mail.local", smtpPort="2525", fromEmail="me@local", password="pw")

        await EmailNodeExecutor(transport).execute(Node(id="mail", type="email", config=config), context)

        server = transport.servers[0]
        assert server.host == "mail.local"
        assert server.port == 2525
        assert server.username == "me@local"
        assert server.password == "pw"
        assert transport.sent[0].sender == "me@local"

    async def test_transport_failure_is_simulated(self, context):
        executor = EmailNodeExecutor(RecordingMailTransport(fail=True))

        outcome = await executor.execute(Node(id="mail", type="email", config=self.CONFIG), context)

        assert outcome.success
        assert outcome.data["simulated"] is True
        assert outcome.data["messageId"].startswith("sim-")
        assert outcome.data["to"] == "ops@example.com"

    async def test_missing_configuration(self, context):
        executor = EmailNodeExecutor(RecordingMailTransport())

        with pytest.raises(MissingConfigurationError) as exc_info:
            await executor.execute(Node(id="mail", type="email", config={"to": "a@b.c"}), context)

        assert exc_info.value.node_id == "mail"
        assert exc_info.value.missing == ["subject", "message"]


class TestHttpRequestNodeExecutor:
    """HTTP 请求节点测试"""

    def _executor(self, handler) -> HttpRequestNodeExecutor:
        return HttpRequestNodeExecutor(timeout=5, transport=httpx.MockTransport(handler))

    async def test_get_request(self, context):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="hello", headers={"X-Test": "1"})

        node = Node(id="http", type="http-request", config={"url": "https://api.test/items"})
        outcome = await self._executor(handler).execute(node, context)

        assert outcome.success
        assert outcome.error is None
        assert outcome.data["status"] == 200
        assert outcome.data["statusText"] == "OK"
        assert outcome.data["body"] == "hello"
        assert outcome.data["headers"]["x-test"] == "1"
        assert seen[0].method == "GET"
        assert seen[0].content == b""
        assert seen[0].headers["Content-Type"] == "application/json"

    async def test_post_serializes_body(self, context):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"ok": True})

        node = Node(
            id="http",
            type="http-request",
            config={
                "url": "https://api.test/items",
                "method": "post",
                "headers": {"Authorization": "Bearer t"},
                "body": {"name": "widget"}
            }
        )
        outcome = await self._executor(handler).execute(node, context)

        assert outcome.success
        assert json.loads(seen[0].content) == {"name": "widget"}
        assert seen[0].method == "POST"
        assert seen[0].headers["Authorization"] == "Bearer t"

    async def test_non_2xx_is_unsuccessful(self, context):
        node = Node(id="http", type="http-request", config={"url": "https://api.test/x"})
        outcome = await self._executor(lambda request: httpx.Response(500, text="boom")).execute(node, context)

        assert not outcome.success
        assert outcome.error == "HTTP 500"
        assert outcome.data["body"] == "boom"

    async def test_network_failure_raises(self, context):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        node = Node(id="http", type="http-request", config={"url": "https://api.test/x"})
        with pytest.raises(TransportFailure, match="connection refused"):
            await self._executor(handler).execute(node, context)

    async def test_missing_url(self, context):
        with pytest.raises(MissingConfigurationError):
            await self._executor(lambda request: httpx.Response(200)).execute(
                Node(id="http", type="http-request"), context
            )


class TestDelayNodeExecutor:
    """延时节点测试"""

    async def test_delay(self, context):
        outcome = await DelayNodeExecutor().execute(Node(id="d", type="delay", config={"delay": 5}), context)

        assert outcome.success
        assert outcome.data["delayed"] == 5


class TestConditionNodeExecutor:
    """条件节点测试"""

    async def test_default_condition_is_true(self, context):
        outcome = await ConditionNodeExecutor().execute(Node(id="c", type="condition"), context)

        assert outcome.success
        assert outcome.data["condition"] == "true"
        assert outcome.data["result"] is True

    async def test_reads_payload_and_prior_outcomes(self):
        context = RunContext(run_id="run-1", workflow_id="wf-1", trigger_payload={"amount": 42})
        context.record("fetch", NodeOutcome(success=True, data={"status": 200}))
        node = Node(id="c", type="condition", config={
            "condition": "amount > 40 and nodes.fetch.data.status == 200"
        })

        outcome = await ConditionNodeExecutor().execute(node, context)

        assert outcome.data["result"] is True

    async def test_scheduler_payload_trigger_key(self):
        context = RunContext(
            run_id="run-1",
            workflow_id="wf-1",
            trigger_payload={"scheduledAt": "2025-06-01T09:00:00+00:00", "trigger": "schedule", "executionCount": 3}
        )
        node = Node(id="c", type="condition", config={
            "condition": "trigger == 'schedule' and payload.executionCount == 3"
        })

        outcome = await ConditionNodeExecutor().execute(node, context)

        assert outcome.data["result"] is True

    async def test_trigger_alias_without_trigger_key(self, context):
        node = Node(id="c", type="condition", config={"condition": "trigger.amount == 42"})

        outcome = await ConditionNodeExecutor().execute(node, context)

        assert outcome.data["result"] is True

    async def test_invalid_expression_is_false(self, context):
        node = Node(id="c", type="condition", config={"condition": "__import__('os')"})

        outcome = await ConditionNodeExecutor().execute(node, context)

        assert outcome.success
        assert outcome.data["result"] is False


class TestDefaultNodeExecutor:
    """未知类型节点测试"""

    async def test_unknown_type(self, context):
        outcome = await DefaultNodeExecutor().execute(Node(id="x", type="webhook"), context)

        assert outcome.success
        assert outcome.data["message"] == "Node webhook executed"
