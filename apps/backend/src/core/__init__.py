"""
Core infrastructure: configuration, the state store engine, errors and logging.
"""

from .config import get_settings
from .database import (
    Base,
    create_async_database_engine,
    create_async_session_factory,
    create_schema,
)
from .logging import setup_logging

__all__ = [
    "get_settings",
    "create_async_database_engine",
    "create_async_session_factory",
    "create_schema",
    "setup_logging",
    "Base",
]
