"""Block until the Postgres behind DATABASE_URL accepts connections (imported by start_api.py)."""
import logging
import os
import time
from urllib.parse import urlparse

import psycopg2

from app.core.config import settings
from app.core.logging import setup_logging

logger = logging.getLogger("wait_for_db")


def conninfo(database_url: str) -> dict:
    # drop the SQLAlchemy driver suffix (postgresql+psycopg2://) before parsing
    _, rest = database_url.split("://", 1)
    p = urlparse("postgresql://" + rest)
    return {
        "host": p.hostname or "db",
        "port": p.port or 5432,
        "user": p.username or "jt_booking",
        "password": p.password or "jt_booking",
        "dbname": (p.path or "").lstrip("/") or "jt_booking",
    }


def wait(database_url: str, timeout_s: int) -> None:
    info = conninfo(database_url)
    deadline = time.monotonic() + timeout_s
    logger.info("waiting for postgres at %s:%s db=%s (timeout=%ss)", info["host"], info["port"], info["dbname"], timeout_s)
    while True:
        try:
            psycopg2.connect(connect_timeout=3, **info).close()
        except psycopg2.OperationalError as e:
            if time.monotonic() > deadline:
                logger.error("gave up waiting for postgres: %s", e)
                raise
            time.sleep(1)
        else:
            logger.info("postgres is ready")
            return


if not settings.DATABASE_URL:
    raise SystemExit("DATABASE_URL is not set")

setup_logging()
wait(settings.DATABASE_URL, int(os.getenv("DB_WAIT_TIMEOUT", "60")))
