"""Exception hierarchy for the ReAcTree engine.

Everything inherits from ReActreeError so callers can catch broadly or
narrowly. Most of these never escape the scheduler: leaf, loop and condition
errors are folded into failed TaskResults and only their class name
(``TaskResult.error_type``) travels up the tree. Feedback errors are raised by
``FeedbackRouter.submit`` and plan/config errors abort a run before it starts.
"""


class ReActreeError(Exception):
    """Base exception for all engine errors."""


# ---------------------------------------------------------------------------
# Configuration / planning
# ---------------------------------------------------------------------------


class ConfigError(ReActreeError):
    """Invalid or missing run configuration."""


class RunNotFound(ReActreeError):
    """No persisted run directory exists for the requested run id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class PlanValidationError(ReActreeError):
    """The task tree is malformed or references unknown capabilities."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid task tree: {'; '.join(errors)}")


# ---------------------------------------------------------------------------
# Node execution
# ---------------------------------------------------------------------------


class LeafExecutionError(ReActreeError):
    """A Task Executor raised or returned something unusable."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Leaf {node_id} failed: {message}")


class OutputValidationError(LeafExecutionError):
    """A leaf's output does not match the ``output_schema`` it declares."""

    def __init__(self, node_id: str, errors: list[str]):
        self.errors = errors
        super().__init__(node_id, f"output does not match schema: {'; '.join(errors)}")


class LeafTimeoutError(LeafExecutionError):
    """A Task Executor did not finish within its caller-supplied timeout."""

    error_type = "TimeoutError"

    def __init__(self, node_id: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(node_id, f"timed out after {timeout_seconds}s")


class LoopLimitExceeded(ReActreeError):
    """A Loop node ran its body max_iterations times without meeting its stop condition."""

    def __init__(self, node_id: str, max_iterations: int):
        self.node_id = node_id
        self.max_iterations = max_iterations
        super().__init__("loop limit exceeded")


class EmptyFallback(ReActreeError):
    """A Fallback node has no children to try."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__("fallback has no children")


class ConditionEvaluationError(ReActreeError):
    """A predicate could not be evaluated."""


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


class FeedbackError(ReActreeError):
    """A FeedbackMessage was rejected at submission time."""


class StructuralViolation(FeedbackError):
    """The target of a feedback message is not a strict ancestor of its sender."""


class FeedbackBudgetExhausted(FeedbackError):
    """The (from, to) pair has used up its feedback rounds."""

    def __init__(self, from_node: str, to_node: str, limit: int, message: str | None = None):
        self.from_node = from_node
        self.to_node = to_node
        self.limit = limit
        super().__init__(
            message or f"Feedback budget exhausted for {from_node} -> {to_node} (max {limit} rounds)"
        )


class FeedbackDepthExceeded(FeedbackBudgetExhausted):
    """Accepting the message would nest feedback resolution too deeply."""

    def __init__(self, from_node: str, to_node: str, limit: int):
        super().__init__(
            from_node,
            to_node,
            limit,
            message=f"Feedback nesting depth {limit} exceeded by {from_node} -> {to_node}",
        )


class CycleDetected(FeedbackError):
    """Accepting the message would close a cycle among in-flight feedback edges."""

    def __init__(self, from_node: str, to_node: str, cycle: list[str]):
        self.from_node = from_node
        self.to_node = to_node
        self.cycle = cycle
        super().__init__(f"Feedback {from_node} -> {to_node} would create cycle: {' -> '.join(cycle)}")


def error_type_name(exc: BaseException) -> str:
    """Name reported in TaskResult.error_type for an exception."""
    return getattr(exc, "error_type", None) or type(exc).__name__
