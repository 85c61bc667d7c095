"""Run summary written to ``summary.json`` when a run finishes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from reactree.feedback.message import FeedbackMessage


class RunReport(BaseModel):
    run_id: str
    goal: str = ""
    status: str
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    failure_path: list[str] = Field(default_factory=list)  # root -> originating node
    open_feedback: list[FeedbackMessage] = Field(default_factory=list)
    nodes_executed: int = 0
    started_at: datetime = Field(default_factory=datetime.now)
    duration_ms: int = 0
    resumed: bool = False

    @property
    def success(self) -> bool:
        return self.status == "succeeded"


class RunStatus(BaseModel):
    """Point-in-time view of a run, finished or not."""

    run_id: str
    status: str  # node status of the root, "in_progress" or a finished report's status
    summary: RunReport | None = None
    node_states: dict[str, str] = Field(default_factory=dict)
    open_feedback: list[FeedbackMessage] = Field(default_factory=list)
