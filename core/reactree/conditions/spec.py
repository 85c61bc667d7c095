"""
Condition specifications - the predicates Loop and Conditional nodes test.

Kinds:
- observation: boolean over one Working Memory fact
- test_result: did the last test run pass (fact or injected test runner)
- filesystem: path exists / missing / non-empty / contains a pattern
- expression: safe Python-subset expression over memory and context
"""

import ast
import hashlib
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

DEFAULT_TEST_RESULT_KEY = "tests.result"


class ConditionKind(StrEnum):
    OBSERVATION = "observation"
    TEST_RESULT = "test_result"
    FILESYSTEM = "filesystem"
    EXPRESSION = "expression"


class FilesystemCheck(StrEnum):
    EXISTS = "exists"
    MISSING = "missing"
    NONEMPTY = "nonempty"
    CONTAINS = "contains"


class ConditionSpec(BaseModel):
    """
    A predicate evaluated by the ConditionEvaluator.

    Examples:
        ConditionSpec(kind="test_result")                        # tests.result says pass
        ConditionSpec(kind="observation", key="db.migrated")      # truthy fact
        ConditionSpec(kind="observation", key="build.status", equals="green")
        ConditionSpec(kind="filesystem", path="app/models/user.rb")
        ConditionSpec(kind="expression", expr="fact('coverage.percent') >= 85")
    """

    kind: ConditionKind
    key: str | None = None
    equals: Any = None
    path: str | None = None
    check: FilesystemCheck = FilesystemCheck.EXISTS
    pattern: str | None = None
    expr: str | None = None
    negate: bool = False
    references: list[str] = Field(
        default_factory=list,
        description="Extra Working Memory keys whose writes invalidate cached results",
    )
    description: str = ""

    model_config = {"extra": "forbid", "frozen": True}

    @model_validator(mode="after")
    def _check_fields(self) -> "ConditionSpec":
        if self.kind == ConditionKind.OBSERVATION and not self.key:
            raise ValueError("observation conditions need a key")
        if self.kind == ConditionKind.FILESYSTEM:
            if not self.path:
                raise ValueError("filesystem conditions need a path")
            if self.check == FilesystemCheck.CONTAINS and not self.pattern:
                raise ValueError("filesystem 'contains' checks need a pattern")
        if self.kind == ConditionKind.EXPRESSION and not self.expr:
            raise ValueError("expression conditions need expr")
        return self

    @property
    def fact_key(self) -> str | None:
        if self.kind == ConditionKind.TEST_RESULT:
            return self.key or DEFAULT_TEST_RESULT_KEY
        return self.key

    def referenced_facts(self) -> set[str]:
        """Working Memory keys this predicate reads."""
        refs = set(self.references)
        if self.kind in (ConditionKind.OBSERVATION, ConditionKind.TEST_RESULT):
            refs.add(self.fact_key)
        elif self.kind == ConditionKind.EXPRESSION and self.expr:
            refs.update(_expression_reads(self.expr)[0])
        return refs

    @property
    def cacheable(self) -> bool:
        """False for expressions that read ``memory`` in a way whose keys cannot be traced."""
        if self.kind != ConditionKind.EXPRESSION or not self.expr:
            return True
        return _expression_reads(self.expr)[1]

    def fingerprint(self) -> str:
        return hashlib.sha1(self.model_dump_json().encode("utf-8")).hexdigest()


def _expression_reads(expr: str) -> tuple[set[str], bool]:
    """
    Working Memory keys read by ``expr`` and whether every read of ``memory`` was traced.

    ``memory`` used any other way (a variable subscript, ``"k" in memory``,
    passed to a function) makes the set of keys unknowable.
    """
    try:
        tree = ast.parse(expr, mode="eval")
    except SyntaxError:
        return set(), True
    keys = set()
    traced: set[int] = set()
    for node in ast.walk(tree):
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id == "fact"
            and node.args
            and isinstance(node.args[0], ast.Constant)
            and isinstance(node.args[0].value, str)
        ):
            keys.add(node.args[0].value)
        elif (
            isinstance(node, ast.Subscript)
            and _is_memory(node.value)
            and isinstance(node.slice, ast.Constant)
            and isinstance(node.slice.value, str)
        ):
            keys.add(node.slice.value)
            traced.add(id(node.value))
        elif isinstance(node, ast.Attribute) and _is_memory(node.value):
            keys.add(node.attr)
            traced.add(id(node.value))
    complete = all(id(node) in traced for node in ast.walk(tree) if _is_memory(node))
    return keys, complete


def _is_memory(node: ast.AST) -> bool:
    return isinstance(node, ast.Name) and node.id == "memory"
