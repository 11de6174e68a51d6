import os
import logging
import time
import functools
import random
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import OperationalError

from studio_api.utils import env_int

logger = logging.getLogger(__name__)

# --- SQLAlchemy Configuration ---


def get_database_url() -> str:
    """Builds the connection URL from environment variables."""
    url = os.getenv("DATABASE_URL")
    if url:
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+psycopg2://", 1)
        elif url.startswith("postgresql://") and "+" not in url.split("://")[0]:
            url = url.replace("postgresql://", "postgresql+psycopg2://", 1)
        return url

    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    db_name = os.getenv("DB_NAME", "studio")
    sslmode = os.getenv("DB_SSLMODE", "")

    auth = f"{user}:{password}" if password else user
    base_url = f"postgresql+psycopg2://{auth}@{host}:{port}/{db_name}"

    # Required for Neon and other cloud databases
    if sslmode:
        base_url += f"?sslmode={sslmode}"

    return base_url


def install_sqlite_serializable(engine: Engine) -> None:
    """Makes every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so two sessions can read the
    same counters and then race to upgrade their locks. BEGIN IMMEDIATE
    serializes writers instead, which is what the row locks do on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: Optional[str] = None) -> Engine:
    url = url or get_database_url()
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        install_sqlite_serializable(engine)
        return engine

    tz_name = os.getenv("APP_TIMEZONE", "America/Argentina/Buenos_Aires")
    try:
        return create_engine(
            url,
            pool_pre_ping=True,
            pool_size=env_int("DB_POOL_SIZE", 10),
            max_overflow=env_int("DB_MAX_OVERFLOW", 20),
            pool_recycle=env_int("DB_POOL_RECYCLE", 1800),
            connect_args={"options": f"-c timezone={tz_name}"},
        )
    except Exception as e:
        logger.error(f"Error creating engine with pool options: {e}")
        return create_engine(url, pool_pre_ping=True)


DATABASE_URL = get_database_url()
engine = build_engine(DATABASE_URL)

session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
SessionLocal = scoped_session(session_factory)


def database_retry(func=None, *, max_retries=3, base_delay=0.5, max_delay=5.0):
    """Retries a callable on transient connection errors with exponential backoff."""

    def _decorate(f):
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries + 1):
                try:
                    return f(*args, **kwargs)
                except OperationalError as e:
                    last_exception = e
                    error_msg = str(e).lower()
                    recoverable = any(
                        msg in error_msg
                        for msg in [
                            "server closed the connection",
                            "connection",
                            "timeout",
                            "could not connect",
                        ]
                    )

                    if not recoverable or attempt == max_retries:
                        logger.error(
                            f"Non recoverable error or retries exhausted in {f.__name__}: {e}"
                        )
                        raise e

                    delay = min(base_delay * (2**attempt), max_delay)
                    jitter = random.uniform(0, delay * 0.1)
                    time.sleep(delay + jitter)
                    logger.warning(
                        f"Retrying {f.__name__} (attempt {attempt + 1}) after error: {e}"
                    )

            raise last_exception

        return wrapper

    if callable(func):
        return _decorate(func)

    def decorator(f):
        return _decorate(f)

    return decorator
