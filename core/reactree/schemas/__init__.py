from reactree.schemas.report import RunReport, RunStatus
from reactree.schemas.state import ControlFlowState, FeedbackStateRecord, NodeMetric

__all__ = ["ControlFlowState", "FeedbackStateRecord", "NodeMetric", "RunReport", "RunStatus"]
