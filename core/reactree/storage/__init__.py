"""Run snapshots and the resumable state log."""

from reactree.storage.run_store import RunStore, new_run_id
from reactree.storage.state_log import ResumeState, StateLog

__all__ = ["ResumeState", "RunStore", "StateLog", "new_run_id"]
