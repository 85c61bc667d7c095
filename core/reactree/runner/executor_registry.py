"""Capability-tagged Task Executor registry, compiled against a tree at plan time."""

import importlib
import logging
from collections.abc import Callable, Mapping
from typing import Any

from reactree.errors import ConfigError, PlanValidationError
from reactree.tree.node import TaskTree
from reactree.tree.task import FunctionExecutor, TaskExecutor
from reactree.tree.validator import check_schema

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """
    Maps capability tags to Task Executors.

    Executors are resolved once per tree by ``compile()``: an unknown capability
    fails the run before any node starts instead of halfway through.

    Example:
        registry = ExecutorRegistry()
        registry.register("rails.model", ModelGenerator())
        registry.register_function("rspec", run_specs)
        compiled = registry.compile(tree)   # {node_id: executor}
    """

    def __init__(self):
        self._executors: dict[str, TaskExecutor] = {}

    def register(self, capability: str, executor: TaskExecutor) -> None:
        if not hasattr(executor, "execute_task"):
            raise TypeError(f"Executor for {capability!r} has no execute_task method")
        if capability in self._executors:
            logger.warning(f"Replacing executor for capability {capability!r}")
        self._executors[capability] = executor

    def register_function(self, capability: str, func: Callable[..., Any]) -> None:
        """Register a plain (sync or async) ``func(spec, memory) -> TaskResult``."""
        self.register(capability, FunctionExecutor(func, name=capability))

    def get(self, capability: str) -> TaskExecutor:
        try:
            return self._executors[capability]
        except KeyError:
            raise KeyError(f"No executor registered for capability {capability!r}") from None

    def has(self, capability: str) -> bool:
        return capability in self._executors

    def capabilities(self) -> list[str]:
        return sorted(self._executors)

    def compile(self, tree: TaskTree, node_ids: list[str] | None = None) -> dict[str, TaskExecutor]:
        """Resolve every capability in the tree (or in ``node_ids``) to an executor.

        Raises PlanValidationError listing all structural problems, malformed
        output schemas and unknown capabilities at once.
        """
        errors = tree.validate_structure() if node_ids is None else []
        ids = node_ids if node_ids is not None else [n.id for n in tree.walk()]
        compiled: dict[str, TaskExecutor] = {}
        for node_id in ids:
            node = tree.get(node_id)
            if node.output_schema is not None:
                for problem in check_schema(node.output_schema):
                    errors.append(f"Node '{node_id}' has an invalid output_schema: {problem}")
            if not node.capability:
                continue
            executor = self._executors.get(node.capability)
            if executor is None:
                errors.append(f"Node '{node_id}' needs unknown capability '{node.capability}'")
            else:
                compiled[node_id] = executor
        if errors:
            raise PlanValidationError(errors)
        return compiled

    # === DISCOVERY ===

    def update(self, executors: Mapping[str, Any]) -> int:
        """Register a mapping of capability -> executor or function."""
        for capability, executor in executors.items():
            if hasattr(executor, "execute_task"):
                self.register(capability, executor)
            elif callable(executor):
                self.register_function(capability, executor)
            else:
                raise TypeError(f"Cannot register {executor!r} for capability {capability!r}")
        return len(executors)

    @classmethod
    def from_import_path(cls, target: str) -> "ExecutorRegistry":
        """Load executors from ``module:attr``.

        ``attr`` may be an ExecutorRegistry, a mapping of capability -> executor,
        or a zero-argument callable returning either.
        """
        module_name, _, attr = target.partition(":")
        if not module_name or not attr:
            raise ValueError(f"Expected MODULE:ATTR, got {target!r}")
        module = importlib.import_module(module_name)
        try:
            obj = getattr(module, attr)
        except AttributeError as e:
            raise ConfigError(f"Module {module_name} has no attribute {attr!r}") from e
        if callable(obj) and not isinstance(obj, (ExecutorRegistry, Mapping)):
            obj = obj()
        if isinstance(obj, ExecutorRegistry):
            return obj
        if isinstance(obj, Mapping):
            registry = cls()
            try:
                count = registry.update(obj)
            except TypeError as e:
                raise ConfigError(f"{target}: {e}") from e
            logger.info(f"Loaded {count} executor(s) from {target}")
            return registry
        raise ConfigError(f"{target} is neither an ExecutorRegistry nor a mapping")
