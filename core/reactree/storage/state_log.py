"""
State Persistence Layer - the durable transition log a run is resumed from.

Three append-only JSONL files per run directory:

    control_flow_state.jsonl   # ControlFlowState per node transition
    feedback_state.jsonl       # FeedbackStateRecord per accept/reject/resolve
    workflow_metrics.jsonl     # NodeMetric per completed node

Records are kept in memory as well, so a StateLog without a directory (tests,
``persist=False``) still replays.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from reactree.feedback.message import FeedbackMessage, FeedbackType
from reactree.schemas.state import ControlFlowState, FeedbackStateRecord, NodeMetric
from reactree.utils.io import append_jsonl, read_jsonl_as_models

logger = logging.getLogger(__name__)

CONTROL_FLOW_FILE = "control_flow_state.jsonl"
FEEDBACK_FILE = "feedback_state.jsonl"
METRICS_FILE = "workflow_metrics.jsonl"


@dataclass
class ResumeState:
    """What a previous attempt of the run left behind."""

    latest: dict[str, ControlFlowState] = field(default_factory=dict)
    # Position of each node's latest record in the control-flow log
    sequence: dict[str, int] = field(default_factory=dict)
    feedback_rounds: dict[tuple[str, str], int] = field(default_factory=dict)
    open_messages: list[FeedbackMessage] = field(default_factory=list)

    def completed(self, node_id: str) -> ControlFlowState | None:
        """Latest record if the node already succeeded."""
        state = self.latest.get(node_id)
        if state is not None and state.status == "succeeded":
            return state
        return None

    def interrupted(self, node_id: str) -> ControlFlowState | None:
        """Latest record if the node was still running when the run stopped."""
        state = self.latest.get(node_id)
        if state is not None and state.status == "running":
            return state
        return None

    def recorded_before(self, node_id: str, other_id: str) -> bool:
        """True when ``node_id``'s latest record was logged before ``other_id``'s (or never)."""
        return self.sequence.get(node_id, -1) < self.sequence.get(other_id, -1)

    @property
    def is_empty(self) -> bool:
        return not self.latest and not self.feedback_rounds


class StateLog:
    def __init__(self, run_dir: Path | None = None):
        self._run_dir = run_dir
        self._control: list[ControlFlowState] = []
        self._feedback: list[FeedbackStateRecord] = []
        self._metrics: list[NodeMetric] = []

    @property
    def run_dir(self) -> Path | None:
        return self._run_dir

    # -------------------------------------------------------------------
    # Append (sync; data is on disk as soon as it is logged)
    # -------------------------------------------------------------------

    def append_control(self, state: ControlFlowState) -> None:
        self._control.append(state)
        if self._run_dir is not None:
            append_jsonl(self._run_dir / CONTROL_FLOW_FILE, state)

    def append_feedback(self, record: FeedbackStateRecord) -> None:
        self._feedback.append(record)
        if self._run_dir is not None:
            append_jsonl(self._run_dir / FEEDBACK_FILE, record)

    def append_metric(self, metric: NodeMetric) -> None:
        self._metrics.append(metric)
        if self._run_dir is not None:
            append_jsonl(self._run_dir / METRICS_FILE, metric)

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    def control_states(self) -> list[ControlFlowState]:
        return list(self._control)

    def feedback_records(self) -> list[FeedbackStateRecord]:
        return list(self._feedback)

    def metrics(self) -> list[NodeMetric]:
        return list(self._metrics)

    def load(self) -> None:
        """Reload the in-memory copy from the run directory."""
        if self._run_dir is None:
            return
        self._control = read_jsonl_as_models(self._run_dir / CONTROL_FLOW_FILE, ControlFlowState)
        self._feedback = read_jsonl_as_models(self._run_dir / FEEDBACK_FILE, FeedbackStateRecord)
        self._metrics = read_jsonl_as_models(self._run_dir / METRICS_FILE, NodeMetric)
        logger.info(
            f"Loaded {len(self._control)} control-flow, {len(self._feedback)} feedback "
            f"and {len(self._metrics)} metric records from {self._run_dir}"
        )

    def replay(self) -> ResumeState:
        state = ResumeState()
        for index, record in enumerate(self._control):
            state.latest[record.node_id] = record
            state.sequence[record.node_id] = index

        open_by_id: dict[str, FeedbackMessage] = {}
        for record in self._feedback:
            if record.event == "accepted":
                pair = (record.from_node, record.to_node)
                state.feedback_rounds[pair] = max(state.feedback_rounds.get(pair, 0), record.round)
                open_by_id[record.message_id] = FeedbackMessage(
                    id=record.message_id,
                    from_node=record.from_node,
                    to_node=record.to_node,
                    type=FeedbackType(record.type),
                    payload=record.payload,
                    round=record.round,
                    created_at=record.timestamp,
                )
            elif record.event == "resolved":
                open_by_id.pop(record.message_id, None)
        state.open_messages = list(open_by_id.values())
        return state
