"""
条件表达式求值器

只解释白名单内的 Python 表达式语法，不调用 eval。
"""
import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Dict

from ..exceptions import ExpressionError


MAX_EXPRESSION_LENGTH = 2000
MAX_SEQUENCE_LENGTH = 10000

CONSTANT_NAMES = {"true": True, "false": False, "null": None}

BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

UNARY_OPERATORS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

COMPARE_OPERATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


class ExpressionEvaluator(ast.NodeVisitor):
    """在给定变量作用域内对表达式树求值"""

    def __init__(self, scope: Dict[str, Any]):
        self.scope = scope

    def generic_visit(self, node: ast.AST) -> Any:
        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.scope:
            return self.scope[node.id]
        if node.id in CONSTANT_NAMES:
            return CONSTANT_NAMES[node.id]
        raise ExpressionError(f"Unknown name: {node.id}")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to attribute '{node.attr}' is not allowed")
        value = self.visit(node.value)
        # 属性访问只映射到字典键
        if isinstance(value, Mapping) and node.attr in value:
            return value[node.attr]
        raise ExpressionError(f"Unknown attribute: {node.attr}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        if not isinstance(value, (Mapping, Sequence)):
            raise ExpressionError(f"Cannot subscript value of type {type(value).__name__}")
        index = self.visit(node.slice)
        try:
            return value[index]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Invalid subscript {index!r}: {e}")

    def visit_Slice(self, node: ast.Slice) -> slice:
        lower = self.visit(node.lower) if node.lower else None
        upper = self.visit(node.upper) if node.upper else None
        step = self.visit(node.step) if node.step else None
        return slice(lower, upper, step)

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result = None
        for value_node in node.values:
            result = self.visit(value_node)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        try:
            return op(self.visit(node.operand))
        except TypeError as e:
            raise ExpressionError(str(e))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self.visit(node.left)
        right = self.visit(node.right)

        # 防止字符串或列表乘法产生超大对象
        if isinstance(node.op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * count > MAX_SEQUENCE_LENGTH:
                        raise ExpressionError("Sequence repetition result too large")

        try:
            return op(left, right)
        except (TypeError, ZeroDivisionError, ValueError) as e:
            raise ExpressionError(str(e))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = COMPARE_OPERATORS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            try:
                if not op(left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(str(e))
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(element) for element in node.elts)


def evaluate(expression: str, scope: Dict[str, Any]) -> Any:
    """对表达式求值"""
    if not isinstance(expression, str):
        raise ExpressionError(f"Expression must be a string, got {type(expression).__name__}")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression too long")

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}")

    try:
        return ExpressionEvaluator(scope).visit(tree)
    except RecursionError:
        raise ExpressionError("Expression nested too deeply")


def evaluate_condition(expression: str, scope: Dict[str, Any]) -> bool:
    """对条件表达式求值并转为布尔值"""
    return bool(evaluate(expression, scope))
