"""
Database engine upgrade orchestrator.

This package upgrades a local database engine installation in place while
pausing and later resuming the backup application that depends on it.
"""

__version__ = "0.1.0"
