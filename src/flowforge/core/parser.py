"""
工作流解析器
"""
import json
from pathlib import Path
from typing import Dict, Any, List, Union

import yaml

from ..models.workflow import Workflow, Node, Edge, WorkflowStatus
from ..exceptions import WorkflowParseError, WorkflowValidationError


class WorkflowParser:
    """工作流解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> Workflow:
        """
        解析工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            Workflow: 解析并验证后的工作流对象
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if '\n' not in source and len(source) < 4096:
                path = Path(source)
                if path.suffix and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path) -> Workflow:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise WorkflowParseError(f"Failed to read workflow file '{file_path}': {e}")

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> Workflow:
        """解析工作流字符串，YAML 是 JSON 的超集"""
        return self._parse_dict(self._parse_yaml(content))

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Dict[str, Any]) -> Workflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        if isinstance(data.get('workflow'), dict):
            data = data['workflow']

        # 兼容把节点和边放在 definition 下的格式
        definition = data.get('definition') or {}
        if isinstance(definition, str):
            definition = self._parse_json(definition)

        try:
            status = WorkflowStatus(data.get('status', WorkflowStatus.DRAFT.value))
        except ValueError:
            raise WorkflowParseError(f"Invalid workflow status: {data.get('status')}")

        try:
            version = int(data.get('version', 1))
        except (TypeError, ValueError):
            raise WorkflowParseError(f"Invalid workflow version: {data.get('version')}")

        workflow = Workflow(
            name=data.get('name', ''),
            version=version,
            status=status,
            description=data.get('description'),
            user_id=data.get('user_id')
        )
        if data.get('id'):
            workflow.id = str(data['id'])

        for node_data in data.get('nodes', definition.get('nodes', [])) or []:
            workflow.nodes.append(self._parse_node(node_data))

        for edge_data in data.get('edges', definition.get('edges', [])) or []:
            workflow.edges.append(self._parse_edge(edge_data))

        # 验证工作流
        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError(f"Workflow validation failed: {errors}")

        return workflow

    def _parse_node(self, data: Dict[str, Any]) -> Node:
        """解析节点"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Node definition must be a mapping: {data!r}")
        if not data.get('id'):
            raise WorkflowParseError(f"Node definition missing id: {data!r}")
        if not data.get('type'):
            raise WorkflowParseError(f"Node '{data['id']}' missing type")

        # 编辑器格式把 label 和 config 放在 data 下
        extra = data.get('data') if isinstance(data.get('data'), dict) else {}
        config = data.get('config', extra.get('config', {})) or {}
        if not isinstance(config, dict):
            raise WorkflowParseError(f"Node '{data['id']}' config must be a mapping")

        return Node(
            id=str(data['id']),
            type=str(data['type']),
            label=data.get('label', extra.get('label', '')) or '',
            config=dict(config)
        )

    def _parse_edge(self, data: Dict[str, Any]) -> Edge:
        """解析边"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Edge definition must be a mapping: {data!r}")

        source = data.get('source', data.get('from'))
        target = data.get('target', data.get('to'))
        if not source or not target:
            raise WorkflowParseError(f"Edge must have source and target: {data!r}")

        edge_kwargs = {
            'source': str(source),
            'target': str(target),
            'condition': data.get('condition')
        }
        if data.get('id'):
            edge_kwargs['id'] = str(data['id'])
        return Edge(**edge_kwargs)

    def to_dict(self, workflow: Workflow) -> Dict[str, Any]:
        """工作流转回字典"""
        return {
            'id': workflow.id,
            'name': workflow.name,
            'version': workflow.version,
            'status': workflow.status.value,
            'description': workflow.description,
            'user_id': workflow.user_id,
            'nodes': [
                {'id': node.id, 'type': node.type, 'label': node.label, 'config': node.config}
                for node in workflow.nodes
            ],
            'edges': [
                {'id': edge.id, 'source': edge.source, 'target': edge.target, 'condition': edge.condition}
                for edge in workflow.edges
            ]
        }


def find_execution_order(workflow: Workflow) -> List[str]:
    """按引擎的执行规则推演节点顺序，不执行节点"""
    done: List[str] = [node.id for node in workflow.trigger_nodes()]
    remaining = [node for node in workflow.nodes if node.id not in done]

    while remaining:
        progress = False
        for node in remaining:
            if all(source in done for source in workflow.incoming_sources(node.id)):
                done.append(node.id)
                progress = True
        if not progress:
            return done
        remaining = [node for node in workflow.nodes if node.id not in done]

    return done
