"""
File-based storage for run snapshots.

Each run gets its own directory under ``runs/``; ``list_runs()`` scans the
directory rather than maintaining a shared index. Snapshots are written
atomically (temp file + rename).

Storage layout::

    {storage_path}/
      episodic_memory.jsonl          # shared across runs
      runs/
        {run_id}/
          tree.json                  # latest tree snapshot (rewritten after edits)
          working_memory.jsonl
          control_flow_state.jsonl
          feedback_state.jsonl
          workflow_metrics.jsonl
          summary.json               # written once the run finishes
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path

from reactree.config import RunConfig
from reactree.schemas.report import RunReport
from reactree.tree.node import TaskTree
from reactree.utils.io import atomic_write, read_json

logger = logging.getLogger(__name__)

TREE_FILE = "tree.json"
SUMMARY_FILE = "summary.json"
WORKING_MEMORY_FILE = "working_memory.jsonl"


def new_run_id() -> str:
    """Sortable run id like ``20250101T120000_ab12cd34``."""
    return f"{datetime.now().strftime('%Y%m%dT%H%M%S')}_{uuid.uuid4().hex[:8]}"


class RunStore:
    def __init__(self, config: RunConfig):
        self._config = config

    def run_dir(self, run_id: str) -> Path:
        return self._config.run_dir(run_id)

    def exists(self, run_id: str) -> bool:
        return self.run_dir(run_id).is_dir()

    def ensure_run_dir(self, run_id: str) -> Path:
        run_dir = self.run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    # -------------------------------------------------------------------
    # Tree snapshot
    # -------------------------------------------------------------------

    def save_tree(self, run_id: str, tree: TaskTree) -> None:
        """Sync; called after structural edits while the scheduler is running."""
        with atomic_write(self.run_dir(run_id) / TREE_FILE) as f:
            json.dump(tree.to_dict(), f, indent=2, ensure_ascii=False, default=str)

    def load_tree(self, run_id: str) -> TaskTree | None:
        data = read_json(self.run_dir(run_id) / TREE_FILE)
        return TaskTree.model_validate(data) if data is not None else None

    # -------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------

    async def save_summary(self, report: RunReport) -> None:
        path = self.run_dir(report.run_id) / SUMMARY_FILE
        content = report.model_dump_json(indent=2)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(content)

        await asyncio.to_thread(_write)

    async def load_summary(self, run_id: str) -> RunReport | None:
        data = await asyncio.to_thread(read_json, self.run_dir(run_id) / SUMMARY_FILE)
        return RunReport.model_validate(data) if data is not None else None

    async def list_runs(self, limit: int = 20) -> list[RunReport]:
        """Most recent first. Runs without a summary are reported as ``in_progress``."""
        run_ids = await asyncio.to_thread(self._scan_run_dirs)
        reports = []
        for run_id in run_ids:
            report = await self.load_summary(run_id)
            if report is None:
                report = RunReport(run_id=run_id, status="in_progress", started_at=_infer_started_at(run_id))
            reports.append(report)
        reports.sort(key=lambda r: r.started_at, reverse=True)
        return reports[:limit]

    def _scan_run_dirs(self) -> list[str]:
        runs_dir = self._config.runs_dir
        if not runs_dir.exists():
            return []
        return [d.name for d in runs_dir.iterdir() if d.is_dir()]


def _infer_started_at(run_id: str) -> datetime:
    """Best-effort start time from a run id like '20250101T120000_abc12345'."""
    try:
        return datetime.strptime(run_id.split("_")[0], "%Y%m%dT%H%M%S")
    except (ValueError, IndexError):
        return datetime.fromtimestamp(0)
