import os

from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine, event
from .config import settings


def _ensure_sqlite_dir(url: str) -> None:
    # sqlite:///./var/dev.db -> ./var must exist before the first connect
    if not url.startswith("sqlite:///"):
        return
    path = url[len("sqlite:///"):]
    folder = os.path.dirname(path)
    if folder and path != ":memory:":
        os.makedirs(folder, exist_ok=True)


_is_sqlite = settings.database_url.startswith("sqlite")
_ensure_sqlite_dir(settings.database_url)

# Configure connection pool for better performance
engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
    pool_recycle=3600,  # Recycle connections after 1 hour
    connect_args={"check_same_thread": False} if _is_sqlite else {}
)


if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
