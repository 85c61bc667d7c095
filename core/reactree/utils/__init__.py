"""Shared helpers."""

from reactree.utils.io import append_jsonl, atomic_write, read_json, read_jsonl_as_models

__all__ = ["append_jsonl", "atomic_write", "read_json", "read_jsonl_as_models"]
