"""Run lifecycle: start, resume, status."""

from reactree.runtime.engine import TreeRuntime

__all__ = ["TreeRuntime"]
