"""
Version information for fleet-remediate.

This module provides a single source of truth for version information
across the entire codebase.
"""

__version__ = "1.2.0"

VERSION_INFO = {
    "version": __version__,
    "payload_schema_version": 2,
    "name": "fleet-remediate",
    "full_name": "Fleet Remediation Orchestrator - queue, policy and staged rollout core",
}


def get_version() -> str:
    """Return the current version string."""
    return __version__


def get_version_info() -> dict:
    """Return detailed version information."""
    return VERSION_INFO.copy()
