"""
Database package for the SQL resource store.
"""

from .base import Base, create_db_engine, get_database_url, get_session_factory, init_database
from .models import ApiEndpointModel, SyncResourceModel

__all__ = [
    "Base",
    "create_db_engine",
    "get_database_url",
    "get_session_factory",
    "init_database",
    "ApiEndpointModel",
    "SyncResourceModel",
]
