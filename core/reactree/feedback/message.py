"""Feedback messages - backward requests from a node to one of its ancestors."""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class FeedbackType(StrEnum):
    FIX_REQUEST = "FixRequest"
    CONTEXT_REQUEST = "ContextRequest"
    DEPENDENCY_MISSING = "DependencyMissing"
    ARCHITECTURE_ISSUE = "ArchitectureIssue"


class FeedbackRequest(BaseModel):
    """Attached by a Task Executor to a failed result to ask an ancestor for help.

    ``to_node`` defaults to the leaf's parent.
    """

    type: FeedbackType
    payload: dict[str, Any] = Field(default_factory=dict)
    to_node: str | None = None


class FeedbackMessage(BaseModel):
    id: str = Field(default_factory=lambda: f"fb_{uuid.uuid4().hex[:8]}")
    from_node: str
    to_node: str
    type: FeedbackType
    payload: dict[str, Any] = Field(default_factory=dict)
    round: int = 0
    resolved: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def edge(self) -> tuple[str, str]:
        return (self.from_node, self.to_node)

    @classmethod
    def from_request(cls, from_node: str, to_node: str, request: FeedbackRequest) -> "FeedbackMessage":
        return cls(from_node=from_node, to_node=to_node, type=request.type, payload=dict(request.payload))
