"""Condition specs and the caching Condition Evaluator."""

from reactree.conditions.evaluator import ConditionEvaluator, ConditionOutcome, ConditionResult
from reactree.conditions.safe_eval import UnsafeExpressionError, safe_eval
from reactree.conditions.spec import ConditionKind, ConditionSpec, FilesystemCheck

__all__ = [
    "ConditionEvaluator",
    "ConditionKind",
    "ConditionOutcome",
    "ConditionResult",
    "ConditionSpec",
    "FilesystemCheck",
    "UnsafeExpressionError",
    "safe_eval",
]
