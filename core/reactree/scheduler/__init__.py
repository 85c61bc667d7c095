"""Tree scheduler."""

from reactree.scheduler.executor import TreeScheduler

__all__ = ["TreeScheduler"]
