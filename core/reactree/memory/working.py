"""
Working Memory - the append-only fact table shared by every node of a run.

Facts are namespaced keys (``db.schema.users``, ``tests.result``). A write never
replaces an earlier fact: it appends a new version and reads return the latest
one. The full history stays available for audit and is persisted line by line
to ``working_memory.jsonl`` so a resumed run can rebuild the table.

Executors never see the store itself, only a read-only ``MemoryView`` that
tracks the versions it has observed (monotonic reads).
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from reactree.utils.io import append_jsonl, read_jsonl_as_models

logger = logging.getLogger(__name__)

FactListener = Callable[["WorkingMemoryFact"], None]


class WorkingMemoryFact(BaseModel):
    """One immutable version of a fact."""

    key: str
    value: Any = None
    writer: str = Field(alias="agent")
    timestamp: datetime = Field(default_factory=datetime.now)
    confidence: str = "verified"
    knowledge_type: str | None = None
    version: int = 1

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class MonotonicReadError(RuntimeError):
    """A view observed an older version of a key than it had already seen."""


class WorkingMemoryStore:
    """
    Shared fact table for one run.

    Example:
        memory = WorkingMemoryStore(run_dir / "working_memory.jsonl")
        memory.put("db.schema.users", {"columns": ["id", "email"]}, writer="migrate")
        memory.get("db.schema.users")
        memory.get_all("db.schema")   # {"db.schema.users": WorkingMemoryFact(...)}
    """

    def __init__(self, path: Path | None = None):
        self._path = path
        self._history: dict[str, list[WorkingMemoryFact]] = defaultdict(list)
        self._listeners: list[FactListener] = []

    # === WRITES ===

    def put(
        self,
        key: str,
        value: Any,
        writer: str,
        confidence: str = "verified",
        knowledge_type: str | None = None,
    ) -> WorkingMemoryFact:
        """Append a new version of ``key`` and notify listeners."""
        if not key:
            raise ValueError("Fact key must not be empty")
        versions = self._history[key]
        fact = WorkingMemoryFact(
            key=key,
            value=value,
            writer=writer,
            confidence=confidence,
            knowledge_type=knowledge_type,
            version=len(versions) + 1,
        )
        versions.append(fact)
        if self._path is not None:
            append_jsonl(self._path, fact)
        logger.debug(f"memory.put {key} v{fact.version} by {writer}")
        for listener in list(self._listeners):
            listener(fact)
        return fact

    def subscribe(self, listener: FactListener) -> Callable[[], None]:
        """Call ``listener(fact)`` after every write. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # === READS ===

    def get_fact(self, key: str) -> WorkingMemoryFact | None:
        versions = self._history.get(key)
        return versions[-1] if versions else None

    def get(self, key: str, default: Any = None) -> Any:
        fact = self.get_fact(key)
        return fact.value if fact is not None else default

    def get_all(self, prefix: str = "") -> dict[str, WorkingMemoryFact]:
        """Latest fact for every key inside the ``prefix`` namespace."""
        out = {}
        for key, versions in self._history.items():
            if versions and _in_namespace(key, prefix):
                out[key] = versions[-1]
        return out

    def history(self, key: str) -> list[WorkingMemoryFact]:
        return list(self._history.get(key, ()))

    def snapshot(self, prefix: str = "") -> dict[str, Any]:
        """Latest value per key, as a plain dict."""
        return {key: fact.value for key, fact in self.get_all(prefix).items()}

    def keys(self) -> list[str]:
        return [k for k, v in self._history.items() if v]

    def __len__(self) -> int:
        return sum(len(v) for v in self._history.values())

    def view(self, reader: str) -> "MemoryView":
        return MemoryView(self, reader)

    # === PERSISTENCE ===

    def load(self) -> int:
        """Rebuild the table from the JSONL log. Returns the number of facts loaded."""
        if self._path is None:
            return 0
        facts = read_jsonl_as_models(self._path, WorkingMemoryFact)
        self._history.clear()
        for fact in facts:
            self._history[fact.key].append(fact)
        for versions in self._history.values():
            versions.sort(key=lambda f: f.version)
        logger.info(f"Loaded {len(facts)} working memory facts from {self._path}")
        return len(facts)


class MemoryView:
    """Read-only window onto the store handed to Task Executors."""

    def __init__(self, store: WorkingMemoryStore, reader: str):
        self._store = store
        self.reader = reader
        self._seen: dict[str, int] = {}

    def get_fact(self, key: str) -> WorkingMemoryFact | None:
        fact = self._store.get_fact(key)
        if fact is not None:
            self._observe(fact)
        return fact

    def get(self, key: str, default: Any = None) -> Any:
        fact = self.get_fact(key)
        return fact.value if fact is not None else default

    def get_all(self, prefix: str = "") -> dict[str, WorkingMemoryFact]:
        facts = self._store.get_all(prefix)
        for fact in facts.values():
            self._observe(fact)
        return facts

    def snapshot(self, prefix: str = "") -> dict[str, Any]:
        return {key: fact.value for key, fact in self.get_all(prefix).items()}

    def __contains__(self, key: str) -> bool:
        return self._store.get_fact(key) is not None

    def _observe(self, fact: WorkingMemoryFact) -> None:
        seen = self._seen.get(fact.key, 0)
        if fact.version < seen:
            raise MonotonicReadError(
                f"{self.reader} read {fact.key} v{fact.version} after already seeing v{seen}"
            )
        self._seen[fact.key] = fact.version


def _in_namespace(key: str, prefix: str) -> bool:
    if not prefix:
        return True
    prefix = prefix.rstrip(".")
    return key == prefix or key.startswith(prefix + ".")
