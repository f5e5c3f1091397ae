from contextlib import contextmanager
from typing import Generator, Iterator
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker, declarative_base

# Local development runs against ./kaamconnect.db; deployments point DATABASE_URL at Postgres.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./kaamconnect.db")
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # Sessions are opened from request worker threads and from the event loop thread alike
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
        # SQLite ignores REFERENCES clauses unless asked per connection
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
    )

# Commits are always explicit; the booking lifecycle decides where its transactions end
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator:
    """FastAPI dependency: one session per request, closed when the response is done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=SessionLocal) -> Iterator[Session]:
    """Session for code running outside a request (websocket handshakes, the chat store)."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
