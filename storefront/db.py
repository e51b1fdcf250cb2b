import logging
import time
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from storefront.config import settings
from storefront.metrics import tx_retries

log = logging.getLogger(__name__)

T = TypeVar("T")

_is_sqlite = settings.database_url.startswith("sqlite")

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args={"timeout": 30, "check_same_thread": False} if _is_sqlite else {},
)
# Services snapshot what they need inside a transaction and keep using it after
# commit without touching the database again, hence expire_on_commit=False.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

if _is_sqlite:
    # SQLite has no SELECT ... FOR UPDATE. Taking the write lock when the
    # transaction starts serializes writers the way row locks do on Postgres.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def ping_db() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True


# deadlock_detected, lock_not_available, serialization_failure
_TRANSIENT_SQLSTATES = {"40P01", "55P03", "40001"}


def _sqlstate(exc: DBAPIError):
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_db_error(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    if _sqlstate(exc) in _TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(exc.orig).lower()


def is_unique_violation(exc: BaseException) -> bool:
    if not isinstance(exc, IntegrityError):
        return False
    if _sqlstate(exc) == "23505":
        return True
    return "unique constraint" in str(exc.orig).lower()


def run_in_transaction(db: Session, fn: Callable[[Session], T], attempts: int = 1, backoff_ms: int = 0) -> T:
    """
    Run fn(db) inside one transaction on an idle session. The whole
    transaction is retried (up to `attempts` times, sleeping
    backoff_ms * attempt in between) only when the database reports a
    deadlock or lock timeout; anything else propagates.
    """
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            with db.begin():
                return fn(db)
        except DBAPIError as e:
            if attempt < attempts and is_transient_db_error(e):
                log.warning("transient db error, retrying (attempt %d/%d): %s", attempt, attempts, e.orig)
                tx_retries.inc()
                time.sleep(backoff_ms * attempt / 1000.0)
                continue
            raise
