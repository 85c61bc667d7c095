"""
Episodic Memory - what happened the last times a similar subgoal was attempted.

Records are appended to ``{storage_path}/episodic_memory.jsonl`` and shared
across runs. ``query_similar`` ranks them by keyword-set Jaccard similarity
between the query descriptor and each record's subgoal.
"""

import logging
import re
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from reactree.utils.io import append_jsonl, read_jsonl_as_models

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOP_WORDS = frozenset(
    {"a", "an", "and", "the", "to", "of", "for", "in", "on", "with", "by", "is", "it", "or", "be", "as", "at"}
)


class EpisodicRecord(BaseModel):
    subgoal: str
    patterns_applied: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)
    outcome: str
    timestamp: datetime = Field(default_factory=datetime.now)

    model_config = ConfigDict(frozen=True)


def tokenize(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall(text.lower()) if len(t) > 1 and t not in _STOP_WORDS}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class EpisodicMemoryStore:
    """Append-only, cross-run log of subgoal outcomes."""

    def __init__(self, path: Path | None = None):
        self._path = path
        self._records: list[EpisodicRecord] = []
        if path is not None:
            self.load()

    def record(
        self,
        subgoal: str,
        patterns: list[str] | None = None,
        learnings: list[str] | None = None,
        outcome: str = "success",
    ) -> EpisodicRecord:
        record = EpisodicRecord(
            subgoal=subgoal,
            patterns_applied=list(patterns or []),
            learnings=list(learnings or []),
            outcome=outcome,
        )
        self._records.append(record)
        if self._path is not None:
            append_jsonl(self._path, record)
        logger.info(f"Recorded episode '{subgoal}' ({outcome})")
        return record

    def query_similar(
        self,
        descriptor: str,
        top_k: int = 3,
        outcome: str | None = None,
    ) -> list[EpisodicRecord]:
        """Top ``top_k`` records by Jaccard similarity; most recent first on ties."""
        query = tokenize(descriptor)
        scored = []
        # Later position == more recent, independent of clock resolution
        for position, record in enumerate(self._records):
            if outcome is not None and record.outcome != outcome:
                continue
            score = jaccard(query, tokenize(record.subgoal))
            if score > 0:
                scored.append((score, position, record))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in scored[:top_k]]

    def all(self) -> list[EpisodicRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def load(self) -> int:
        if self._path is None:
            return 0
        self._records = read_jsonl_as_models(self._path, EpisodicRecord)
        return len(self._records)
