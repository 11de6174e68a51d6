import argparse
import hashlib
import os
import time
from contextlib import contextmanager

from dotenv import load_dotenv

load_dotenv()

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text

from studio_api.database.connection import get_database_url


def _lock_key(name: str) -> int:
    d = hashlib.blake2b(str(name).strip().lower().encode("utf-8"), digest_size=8).digest()
    return int(int.from_bytes(d, "big", signed=False) % (2**63 - 1))


@contextmanager
def _advisory_lock(conn, *, name: str, timeout_seconds: int):
    key = _lock_key(name)
    deadline = time.time() + float(max(1, int(timeout_seconds)))
    while True:
        got = conn.execute(text("SELECT pg_try_advisory_lock(:k)"), {"k": key}).scalar()
        if bool(got):
            break
        if time.time() >= deadline:
            raise TimeoutError(f"Timed out waiting for advisory lock (key={key})")
        time.sleep(0.5)
    try:
        yield
    finally:
        conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": key})


def _alembic_cfg(url: str) -> Config:
    here = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
    cfg = Config(os.path.join(here, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(here, "alembic"))
    cfg.set_main_option("sqlalchemy.url", url)
    return cfg


def upgrade_head(url: str, lock_timeout_seconds: int = 120) -> None:
    cfg = _alembic_cfg(url)
    if not url.startswith("postgresql"):
        command.upgrade(cfg, "head")
        return
    engine = create_engine(url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            with _advisory_lock(conn, name="studio-migrations", timeout_seconds=lock_timeout_seconds):
                cfg.attributes["connection"] = conn
                command.upgrade(cfg, "head")
                conn.commit()
    finally:
        engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(prog="studio-migrate")
    parser.add_argument("--database-url", type=str, default=None)
    parser.add_argument("--lock-timeout-seconds", type=int, default=120)
    args = parser.parse_args()

    url = args.database_url or get_database_url()
    try:
        upgrade_head(url, lock_timeout_seconds=int(args.lock_timeout_seconds))
    except Exception as e:
        raise SystemExit(f"Migration failed: {e}")


if __name__ == "__main__":
    main()
