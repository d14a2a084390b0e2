"""
Taskiq task modules.

- workflows: queued workflow execution jobs.
"""

__all__ = ["workflows"]
