"""
Storage and persistence for fleet-remediate.

Provides the SQLite run store behind the remediation queue.
"""

from .run_store import RunStore, StoredRun

__all__ = ["RunStore", "StoredRun"]
