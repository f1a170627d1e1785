"""
Database Infrastructure Package for Tideflow Billing

Exports database utilities.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_database_url,
    get_session_context,
    init_db,
    close_db,
)


__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "get_database_url",
    "get_session_context",
    "init_db",
    "close_db",
]
