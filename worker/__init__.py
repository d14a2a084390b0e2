"""
Taskiq worker package for Blockflow.

Provides broker configuration and the background task that executes queued
workflow jobs (record-created and webhook triggers).
"""

__all__ = ["broker"]
