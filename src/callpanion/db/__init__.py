"""Database module for CallPanion.

Provides:
- SQLAlchemy ORM models for pairing, sessions, push targets and events
- Async session management with dependency injection
- Repository pattern for data access
"""
from callpanion.db.base import (
    Base,
    UUIDMixin,
    TimestampMixin,
)
from callpanion.db.session import (
    get_engine,
    get_session_factory,
    get_db,
    get_db_context,
    init_db,
    close_db,
    create_test_engine,
    create_session_factory,
    get_test_session_factory,
)

__all__ = [
    # Base and mixins
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    # Session management
    "get_engine",
    "get_session_factory",
    "get_db",
    "get_db_context",
    "init_db",
    "close_db",
    # Testing
    "create_test_engine",
    "create_session_factory",
    "get_test_session_factory",
]
