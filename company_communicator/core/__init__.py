"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    build_session_factory,
    close_db,
    engine,
    get_session,
    init_db,
    session_scope,
)
from .dependencies import SessionDep, require_api_key

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "build_session_factory",
    "get_session",
    "session_scope",
    "init_db",
    "close_db",
    # Dependencies
    "require_api_key",
    "SessionDep",
]
