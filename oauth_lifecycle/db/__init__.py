"""
Database module for the OAuth token lifecycle.

Single import point for all database functionality.
All other modules should import from here, not from individual files.
"""

from .database import (
    build_engine,
    build_session_factory,
    create_tables,
    get_database_url,
    get_engine,
    get_session_factory,
    on_shutdown,
    ping,
    with_unit_of_work,
)
from .models import Base, IntegrationRecord
from .token_store import IntegrationStore

__all__ = [
    # Engine and sessions
    "build_engine",
    "build_session_factory",
    "get_database_url",
    "get_engine",
    "get_session_factory",
    "with_unit_of_work",
    # Lifecycle
    "on_shutdown",
    # Health
    "ping",
    # Schema
    "create_tables",
    # Models
    "Base",
    "IntegrationRecord",
    # Store
    "IntegrationStore",
]
