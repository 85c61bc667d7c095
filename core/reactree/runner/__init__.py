"""Executor registry."""

from reactree.runner.executor_registry import ExecutorRegistry

__all__ = ["ExecutorRegistry"]
