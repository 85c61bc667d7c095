"""Pydantic models for the per-run JSONL logs.

control_flow_state.jsonl - one ControlFlowState per node transition
feedback_state.jsonl     - one FeedbackStateRecord per feedback event
workflow_metrics.jsonl   - one NodeMetric per completed node
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------


class ControlFlowState(BaseModel):
    """A node entered, iterated, branched, completed or was reset."""

    timestamp: datetime = Field(default_factory=datetime.now)
    node_id: str
    type: str
    status: str
    iteration_count: int | None = None  # loops only
    branch_taken: str | None = None  # conditionals only: "then" | "else" | "none"
    condition_result: str | None = None  # "true" | "false" | "error"
    cache_expires_at: float | None = None
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    failure_path: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


class FeedbackStateRecord(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    message_id: str
    from_node: str
    to_node: str
    type: str
    round: int = 0
    resolved: bool = False
    event: str  # "accepted" | "rejected" | "resolved"
    reason: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class NodeMetric(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    node_id: str
    type: str
    status: str
    duration_ms: int = 0
    retry_count: int = 0
