"""
AST-whitelisted expression evaluation for condition expressions.

Supports literals, names from the supplied context, boolean/comparison/
arithmetic operators, subscripts, attribute access on plain data, list/tuple/
dict displays, conditional expressions and calls to a small set of safe
builtins plus callables placed in the context (e.g. ``fact``). Anything else
(lambdas, comprehensions, dunder attributes, imports) is rejected before
evaluation.
"""

import ast
import operator
from collections.abc import Mapping
from typing import Any

SAFE_BUILTINS: dict[str, Any] = {
    "len": len,
    "min": min,
    "max": max,
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "round": round,
    "sum": sum,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


class UnsafeExpressionError(ValueError):
    """The expression uses syntax outside the whitelist."""


def safe_eval(expr: str, context: Mapping[str, Any]) -> Any:
    """Evaluate ``expr`` against ``context`` using only whitelisted syntax."""
    try:
        tree = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as e:
        raise UnsafeExpressionError(f"Invalid expression {expr!r}: {e.msg}") from e
    return _Evaluator(context).visit(tree.body)


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]):
        self._context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"_visit_{type(node).__name__}", None)
        if method is None:
            raise UnsafeExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def _visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._context:
            return self._context[node.id]
        if node.id in SAFE_BUILTINS:
            return SAFE_BUILTINS[node.id]
        if node.id in ("True", "False", "None"):
            return {"True": True, "False": False, "None": None}[node.id]
        raise NameError(f"Unknown name in condition: {node.id}")

    def _visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def _visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise UnsafeExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.operand))

    def _visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise UnsafeExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.left), self.visit(node.right))

    def _visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise UnsafeExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def _visit_Subscript(self, node: ast.Subscript) -> Any:
        return self.visit(node.value)[self.visit(node.slice)]

    def _visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise UnsafeExpressionError(f"Access to private attribute: {node.attr}")
        value = self.visit(node.value)
        # Dotted access into mappings: output.status == "ok"
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            raise KeyError(node.attr)
        if isinstance(value, (str, int, float, bool, list, tuple, type(None))):
            return getattr(value, node.attr)
        raise UnsafeExpressionError(f"Attribute access on {type(value).__name__} is not allowed")

    def _visit_Call(self, node: ast.Call) -> Any:
        func = self.visit(node.func)
        allowed = func in SAFE_BUILTINS.values() or any(func is v for v in self._context.values())
        if not callable(func) or not allowed:
            raise UnsafeExpressionError("Only whitelisted functions may be called")
        args = [self.visit(a) for a in node.args]
        kwargs = {kw.arg: self.visit(kw.value) for kw in node.keywords if kw.arg}
        return func(*args, **kwargs)

    def _visit_List(self, node: ast.List) -> list:
        return [self.visit(e) for e in node.elts]

    def _visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(e) for e in node.elts)

    def _visit_Set(self, node: ast.Set) -> set:
        return {self.visit(e) for e in node.elts}

    def _visit_Dict(self, node: ast.Dict) -> dict:
        return {
            self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values, strict=True) if k is not None
        }
