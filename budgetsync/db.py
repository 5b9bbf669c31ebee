from collections.abc import Iterator
from contextlib import contextmanager, nullcontext
import logging
import threading
import time
from typing import Any, Callable, Optional, TypeVar

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool, StaticPool

from budgetsync.core.exceptions import RecordNotFoundError

logger = logging.getLogger("budgetsync.db")

T = TypeVar("T")

MEMORY_URL = "sqlite://"
_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")

# Columns added to the files table after its first release.
_LATE_COLUMNS = ("encrypt_salt", "encrypt_keyid", "encrypt_test")


def normalize_url(location: str) -> str:
    """Accept either a SQLAlchemy URL or a bare SQLite path (``:memory:`` included)."""
    if "://" in location:
        return location
    if location in ("", ":memory:"):
        return MEMORY_URL
    return f"sqlite:///{location}"


def _is_memory(url: str) -> bool:
    return url == MEMORY_URL or ":memory:" in url


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _build_engine(url: str, busy_timeout: float, echo: bool) -> Engine:
    connect_args = {"check_same_thread": False, "timeout": busy_timeout}
    if _is_memory(url):
        # One shared connection, otherwise every pooled connection gets its own empty database
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool, echo=echo)

    engine = create_engine(
        url,
        connect_args=connect_args,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=echo,
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


class Connection:
    """Owns the database engine and the files schema.

    One instance is shared by every store for the lifetime of the process.
    Each method runs as its own transaction; ``transaction()`` is available
    for callers that need several statements to apply atomically.
    """

    def __init__(self, location: str, *, busy_timeout: float = 5.0, echo: bool = False) -> None:
        self.url = normalize_url(location)
        if not self.url.startswith("sqlite"):
            raise ValueError(f"Unsupported database URL {self.url!r}: only SQLite is supported")
        self.engine = _build_engine(self.url, busy_timeout, echo)
        # An in-memory database is a single pysqlite connection, so sessions must take turns on it
        self._lock = threading.RLock() if _is_memory(self.url) else nullcontext()
        self._init_schema()

    def _init_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine)
        self.ensure_schema_compatibility()

    def ensure_schema_compatibility(self) -> None:
        """Add columns missing from a files table created by an older release."""
        with self.engine.connect() as conn:
            result = conn.execute(text("PRAGMA table_info(files)")).fetchall()
            column_names = [row[1] for row in result]

            added = []
            for column in _LATE_COLUMNS:
                if column not in column_names:
                    conn.execute(text(f"ALTER TABLE files ADD COLUMN {column} TEXT DEFAULT NULL"))
                    added.append(column)
            conn.commit()

        if added:
            logger.info("event=schema_upgraded columns=%s", ",".join(added))

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._lock:
            with Session(self.engine, expire_on_commit=False) as session:
                with session.begin():
                    yield session

    def execute(self, statement: Any) -> int:
        with self.transaction() as session:
            result = session.exec(statement)
            return result.rowcount

    def query_one(self, statement: Any, key: Optional[str] = None) -> Any:
        with self.transaction() as session:
            row = session.exec(statement).first()
        if row is None:
            raise RecordNotFoundError(key)
        return row

    def query_all(self, statement: Any) -> list:
        with self.transaction() as session:
            return list(session.exec(statement).all())

    def ping(self) -> bool:
        try:
            with self._lock, self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError:
            return False

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@contextmanager
def open_connection(location: str, **kwargs: Any) -> Iterator[Connection]:
    conn = Connection(location, **kwargs)
    logger.info("event=connection_opened url=%s", conn.url)
    try:
        yield conn
    finally:
        conn.close()
        logger.info("event=connection_closed url=%s", conn.url)


def is_busy_error(exc: BaseException) -> bool:
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


def retry_on_busy(
    operation: Callable[[], T],
    *,
    attempts: int = 5,
    base_delay: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying with exponential backoff while SQLite reports it is busy.

    Any other error, and the busy error of the final attempt, propagates unchanged.
    """
    for attempt in range(attempts):
        try:
            return operation()
        except OperationalError as e:
            if not is_busy_error(e) or attempt == attempts - 1:
                if is_busy_error(e):
                    logger.error("event=db_busy_give_up max_retries=%d error=%s", attempts, e.orig)
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "event=db_busy_retry attempt=%d delay_seconds=%.3f error=%s",
                attempt + 1, delay, e.orig,
            )
            sleep(delay)
    raise RuntimeError("retry_on_busy called with attempts < 1")
