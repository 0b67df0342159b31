"""
Database Infrastructure Package for Storefront Subscriptions

Exports database utilities.
"""

from storefront.infrastructure.db.database import (
    DatabaseManager,
    build_database_url,
    session_scope,
)


__all__ = [
    "DatabaseManager",
    "build_database_url",
    "session_scope",
]
