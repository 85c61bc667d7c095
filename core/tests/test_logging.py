"""Tests for trace-context propagation and the two log formatters."""

import asyncio
import json
import logging

import pytest

from reactree.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    get_trace_context,
    set_trace_context,
    trace_context,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("reactree.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_set_merges_into_context():
    set_trace_context(run_id="run_1")
    set_trace_context(node_id="model")
    assert get_trace_context() == {"run_id": "run_1", "node_id": "model"}

    clear_trace_context()
    assert get_trace_context() == {}


def test_structured_formatter_includes_context_and_extras():
    set_trace_context(run_id="run_1", node_id="model")

    entry = json.loads(StructuredFormatter().format(_record("\033[32mdone\033[0m", event="node.end", latency_ms=12)))

    assert entry["message"] == "done"
    assert entry["level"] == "info"
    assert entry["run_id"] == "run_1"
    assert entry["node_id"] == "model"
    assert entry["event"] == "node.end"
    assert entry["latency_ms"] == 12


def test_human_formatter_prefix():
    set_trace_context(run_id="20250101T120000_ab12cd34", node_id="specs")
    line = HumanReadableFormatter().format(_record("iteration 2/3"))
    assert "[run:ab12cd34 | node:specs]" in line
    assert "iteration 2/3" in line


@pytest.mark.asyncio
async def test_parallel_tasks_keep_their_own_node_id():
    set_trace_context(run_id="run_1")
    seen = {}

    async def child(node_id: str) -> None:
        trace_context.set({**(trace_context.get() or {}), "node_id": node_id})
        await asyncio.sleep(0)
        seen[node_id] = get_trace_context()

    await asyncio.gather(child("a"), child("b"))

    assert seen["a"] == {"run_id": "run_1", "node_id": "a"}
    assert seen["b"] == {"run_id": "run_1", "node_id": "b"}
    assert get_trace_context() == {"run_id": "run_1"}
