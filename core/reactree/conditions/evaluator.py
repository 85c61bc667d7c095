"""
Condition Evaluator - resolves Loop stop conditions and Conditional predicates.

Results are cached per (spec fingerprint, context fingerprint) for
``RunConfig.condition_cache_ttl_seconds``. The evaluator subscribes to the
Working Memory Store and drops every cached entry whose spec references a fact
as soon as that fact is written, so a cached answer never outlives the data it
was computed from. Errors are returned as ``ConditionOutcome.ERROR`` and never
cached.
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from reactree.conditions.safe_eval import safe_eval
from reactree.conditions.spec import ConditionKind, ConditionSpec, FilesystemCheck
from reactree.config import RunConfig
from reactree.errors import ConditionEvaluationError

if TYPE_CHECKING:
    from reactree.memory.working import WorkingMemoryFact, WorkingMemoryStore

logger = logging.getLogger(__name__)

TestRunner = Callable[[ConditionSpec, Mapping[str, Any]], Awaitable[Any]]

_PASSING_STATUSES = {"pass", "passed", "success", "succeeded", "green", "ok"}
_FAILING_STATUSES = {"fail", "failed", "failure", "red", "error"}


class ConditionOutcome(StrEnum):
    TRUE = "true"
    FALSE = "false"
    ERROR = "error"


@dataclass(frozen=True)
class ConditionResult:
    outcome: ConditionOutcome
    error: str | None = None
    cached: bool = False
    expires_at: float | None = None

    @property
    def is_true(self) -> bool:
        return self.outcome == ConditionOutcome.TRUE

    @property
    def is_error(self) -> bool:
        return self.outcome == ConditionOutcome.ERROR


@dataclass
class _CacheEntry:
    result: ConditionResult
    expires_at: float
    facts: frozenset[str]


class ConditionEvaluator:
    """
    Evaluate ConditionSpecs against Working Memory, the workspace and context.

    Usage:
        evaluator = ConditionEvaluator(config, memory)
        result = await evaluator.evaluate(ConditionSpec(kind="test_result"), {})
        if result.is_true:
            ...
    """

    def __init__(
        self,
        config: RunConfig,
        memory: "WorkingMemoryStore",
        test_runner: TestRunner | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._memory = memory
        self._test_runner = test_runner
        self._clock = clock
        self._cache: dict[tuple[str, str], _CacheEntry] = {}
        self._entries_by_fact: dict[str, set[tuple[str, str]]] = defaultdict(set)
        self.hits = 0
        self.misses = 0
        memory.subscribe(self._on_fact_written)

    # === PUBLIC API ===

    async def evaluate(self, spec: ConditionSpec, context: Mapping[str, Any] | None = None) -> ConditionResult:
        context = dict(context or {})
        cache_key = (spec.fingerprint(), _context_fingerprint(context))
        now = self._clock()

        entry = self._cache.get(cache_key)
        if entry is not None:
            if entry.expires_at > now:
                self.hits += 1
                return ConditionResult(entry.result.outcome, cached=True, expires_at=entry.expires_at)
            self._drop(cache_key)

        self.misses += 1
        try:
            value = await self._evaluate_raw(spec, context)
        except Exception as e:
            logger.warning(f"Condition {spec.kind} evaluation failed: {e}")
            return ConditionResult(ConditionOutcome.ERROR, error=f"{type(e).__name__}: {e}")

        if spec.negate:
            value = not value
        expires_at = now + self._config.condition_cache_ttl_seconds if spec.cacheable else None
        result = ConditionResult(
            ConditionOutcome.TRUE if value else ConditionOutcome.FALSE,
            expires_at=expires_at,
        )
        if expires_at is not None and self._config.condition_cache_ttl_seconds > 0:
            self._store(cache_key, result, expires_at, spec.referenced_facts())
        return result

    def invalidate(self, fact_key: str | None = None) -> int:
        """Drop cached entries that reference ``fact_key`` (all entries when None)."""
        if fact_key is None:
            count = len(self._cache)
            self._cache.clear()
            self._entries_by_fact.clear()
            return count
        keys = list(self._entries_by_fact.get(fact_key, ()))
        for cache_key in keys:
            self._drop(cache_key)
        return len(keys)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    # === CACHE BOOKKEEPING ===

    def _on_fact_written(self, fact: "WorkingMemoryFact") -> None:
        dropped = self.invalidate(fact.key)
        if dropped:
            logger.debug(f"Invalidated {dropped} cached condition(s) after write to {fact.key}")

    def _store(self, cache_key: tuple[str, str], result: ConditionResult, expires_at: float, facts: set[str]) -> None:
        self._cache[cache_key] = _CacheEntry(result=result, expires_at=expires_at, facts=frozenset(facts))
        for fact_key in facts:
            self._entries_by_fact[fact_key].add(cache_key)

    def _drop(self, cache_key: tuple[str, str]) -> None:
        entry = self._cache.pop(cache_key, None)
        if entry is None:
            return
        for fact_key in entry.facts:
            keys = self._entries_by_fact.get(fact_key)
            if keys is not None:
                keys.discard(cache_key)
                if not keys:
                    del self._entries_by_fact[fact_key]

    # === PREDICATES ===

    async def _evaluate_raw(self, spec: ConditionSpec, context: dict[str, Any]) -> bool:
        match spec.kind:
            case ConditionKind.OBSERVATION:
                return self._observation(spec)
            case ConditionKind.TEST_RESULT:
                return await self._test_result(spec, context)
            case ConditionKind.FILESYSTEM:
                return await asyncio.to_thread(self._filesystem, spec)
            case ConditionKind.EXPRESSION:
                return bool(safe_eval(spec.expr or "", self._expression_context(context)))
        raise ConditionEvaluationError(f"Unknown condition kind: {spec.kind}")

    def _observation(self, spec: ConditionSpec) -> bool:
        fact = self._memory.get_fact(spec.fact_key or "")
        if fact is None:
            return False
        if spec.equals is not None:
            return fact.value == spec.equals
        return bool(fact.value)

    async def _test_result(self, spec: ConditionSpec, context: dict[str, Any]) -> bool:
        if self._test_runner is not None:
            return _interpret_test_result(await self._test_runner(spec, context))
        fact = self._memory.get_fact(spec.fact_key or "")
        if fact is None:
            return False
        return _interpret_test_result(fact.value)

    def _filesystem(self, spec: ConditionSpec) -> bool:
        path = Path(spec.path or "")
        if not path.is_absolute():
            path = self._config.workspace_root / path

        match spec.check:
            case FilesystemCheck.EXISTS:
                return path.exists()
            case FilesystemCheck.MISSING:
                return not path.exists()
            case FilesystemCheck.NONEMPTY:
                if path.is_dir():
                    return any(path.iterdir())
                return path.is_file() and path.stat().st_size > 0
            case FilesystemCheck.CONTAINS:
                if not path.is_file():
                    return False
                text = path.read_text(encoding="utf-8", errors="replace")
                return re.search(spec.pattern or "", text) is not None
        raise ConditionEvaluationError(f"Unknown filesystem check: {spec.check}")

    def _expression_context(self, context: dict[str, Any]) -> dict[str, Any]:
        def fact(key: str, default: Any = None) -> Any:
            return self._memory.get(key, default)

        return {**context, "memory": self._memory.snapshot(), "context": context, "fact": fact}


def _interpret_test_result(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        status = value.strip().lower()
        if status in _PASSING_STATUSES:
            return True
        if status in _FAILING_STATUSES:
            return False
        raise ConditionEvaluationError(f"Unrecognized test status: {value!r}")
    if isinstance(value, Mapping):
        if "failed" in value:
            return int(value["failed"]) == 0
        if "passed" in value and isinstance(value["passed"], bool):
            return value["passed"]
        if "status" in value:
            return _interpret_test_result(value["status"])
    raise ConditionEvaluationError(f"Cannot interpret test result {value!r}")


def _context_fingerprint(context: Mapping[str, Any]) -> str:
    if not context:
        return ""
    payload = json.dumps(context, sort_keys=True, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()
