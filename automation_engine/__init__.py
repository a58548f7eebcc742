"""
Workflow automation engine.

Persisted, crash-recoverable execution of multi-step business automations
on top of a PostgreSQL job store.
"""

__version__ = "1.0.0"
