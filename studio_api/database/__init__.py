from .connection import (
    engine,
    session_factory,
    SessionLocal,
    get_database_url,
    build_engine,
    database_retry,
)

__all__ = [
    "engine",
    "session_factory",
    "SessionLocal",
    "get_database_url",
    "build_engine",
    "database_retry",
]
