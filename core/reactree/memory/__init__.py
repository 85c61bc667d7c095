"""Working Memory (per run) and Episodic Memory (across runs)."""

from reactree.memory.episodic import EpisodicMemoryStore, EpisodicRecord
from reactree.memory.working import (
    MemoryView,
    MonotonicReadError,
    WorkingMemoryFact,
    WorkingMemoryStore,
)

__all__ = [
    "EpisodicMemoryStore",
    "EpisodicRecord",
    "MemoryView",
    "MonotonicReadError",
    "WorkingMemoryFact",
    "WorkingMemoryStore",
]
