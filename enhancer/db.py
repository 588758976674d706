import logging
from pathlib import Path
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url

from enhancer.core.config import Settings

log = logging.getLogger("db")

# Concurrent spends on one profile wait for the write lock instead of failing
SQLITE_BUSY_TIMEOUT_MS = 5000


def _sqlite_file(url: str) -> Path | None:
    database = make_url(url).database
    if not database or database == ":memory:":
        return None
    return Path(database)


def _on_sqlite_connect(dbapi_conn, _record) -> None:
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cur.close()


def engine_options(settings: Settings) -> Dict[str, Any]:
    opts: Dict[str, Any] = {"future": True, "pool_pre_ping": True, "echo": settings.DB_ECHO}
    if settings.DATABASE_URL.startswith("sqlite:"):
        opts["connect_args"] = {"check_same_thread": False}
    else:
        opts.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_recycle=settings.DB_POOL_RECYCLE_S,
        )
    return opts


def build_engine(settings: Settings) -> Engine:
    """Engine for the profile and image stores. SQLite files get their directory created."""
    url = settings.DATABASE_URL
    if url.startswith("sqlite:"):
        path = _sqlite_file(url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
    eng = create_engine(url, **engine_options(settings))
    if is_sqlite(eng):
        event.listen(eng, "connect", _on_sqlite_connect)
    log.info("db.engine ready dialect=%s", eng.dialect.name)
    return eng


def is_sqlite(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite"


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"
