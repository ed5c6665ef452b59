"""
SQLAlchemy 数据库模型定义
"""
from sqlalchemy import (
    Column, String, Text, Integer, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()


class WorkflowRecord(Base):
    """工作流定义模型"""
    __tablename__ = 'workflows'

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default='draft')
    user_id = Column(String(255))
    definition = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # 关系
    nodes = relationship("WorkflowNodeRecord", back_populates="workflow", cascade="all, delete-orphan")

    # 约束
    __table_args__ = (
        CheckConstraint("status IN ('draft', 'active', 'inactive')", name='check_workflow_status'),
        Index('idx_workflows_status', 'status'),
    )


class WorkflowNodeRecord(Base):
    """工作流节点模型，便于按节点类型查询"""
    __tablename__ = 'workflow_nodes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(String(36), ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False)
    position = Column(Integer, nullable=False)
    node_id = Column(String(255), nullable=False)
    node_type = Column(String(50), nullable=False)
    label = Column(String(255))
    configuration = Column(JSON, nullable=False)

    # 关系
    workflow = relationship("WorkflowRecord", back_populates="nodes")

    # 约束
    __table_args__ = (
        UniqueConstraint('workflow_id', 'node_id', name='unique_workflow_node'),
        Index('idx_workflow_nodes_workflow_id', 'workflow_id'),
        Index('idx_workflow_nodes_type', 'node_type'),
    )


class RunRecord(Base):
    """工作流运行模型"""
    __tablename__ = 'workflow_runs'

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), nullable=False)
    workflow_version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False)
    triggered_by = Column(String(255))
    trigger_payload = Column(JSON, default=dict)
    metrics = Column(JSON, default=dict)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))

    # 约束
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name='check_run_status'
        ),
        Index('idx_workflow_runs_workflow_id', 'workflow_id'),
        Index('idx_workflow_runs_status', 'status'),
    )


class LogRecord(Base):
    """运行日志模型，seq 保证同一时间戳下的插入顺序"""
    __tablename__ = 'execution_logs'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True)
    run_id = Column(String(36), nullable=False)
    node_id = Column(String(255), nullable=False)
    level = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    # 约束
    __table_args__ = (
        CheckConstraint(
            "level IN ('debug', 'info', 'warning', 'success', 'error')",
            name='check_log_level'
        ),
        Index('idx_execution_logs_run_id', 'run_id'),
        Index('idx_execution_logs_timestamp', 'timestamp'),
    )
