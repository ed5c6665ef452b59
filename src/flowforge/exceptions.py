"""
自动化引擎异常定义
"""
from typing import Iterable, Optional


class WorkflowEngineError(Exception):
    """引擎基础异常"""
    pass


class ConfigurationError(WorkflowEngineError):
    """配置异常"""
    pass


class MissingConfigurationError(ConfigurationError):
    """节点缺少必要配置"""
    def __init__(self, node_id: str, missing: Iterable[str]):
        self.node_id = node_id
        self.missing = list(missing)
        super().__init__(
            f"Node '{node_id}' missing required configuration: {', '.join(self.missing)}"
        )


class InvalidCronExpressionError(ConfigurationError):
    """cron 表达式非法"""
    def __init__(self, expression: str, message: str = None):
        self.expression = expression
        msg = f"Invalid cron expression '{expression}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class WorkflowParseError(WorkflowEngineError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """工作流验证异常"""
    pass


class WorkflowExecutionError(WorkflowEngineError):
    """工作流执行异常"""
    pass


class WorkflowNotFoundError(WorkflowExecutionError):
    """工作流不存在"""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class NodeExecutionError(WorkflowExecutionError):
    """节点执行异常"""
    def __init__(self, node_id: str, message: str, cause: Exception = None):
        self.node_id = node_id
        self.cause = cause
        super().__init__(f"Node '{node_id}' execution failed: {message}")


class CircularDependencyError(WorkflowExecutionError):
    """循环依赖"""
    def __init__(self, remaining: Iterable[str]):
        self.remaining = list(remaining)
        super().__init__(
            f"Circular dependency detected among nodes: {', '.join(self.remaining)}"
        )


class TransportFailure(WorkflowEngineError):
    """外部传输（邮件、HTTP）不可达"""
    def __init__(self, target: str, message: str, cause: Optional[Exception] = None):
        self.target = target
        self.cause = cause
        super().__init__(f"Transport to '{target}' failed: {message}")


class StorageUnavailable(WorkflowEngineError):
    """存储不可用"""
    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        msg = f"Storage unavailable during '{operation}'"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class ExpressionError(WorkflowEngineError):
    """条件表达式求值异常"""
    pass
