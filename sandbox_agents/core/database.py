"""Database configuration and session management."""

from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from sandbox_agents.core.config import settings

_engine = None
_session_maker = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine():
    """Get or create the engine."""
    global _engine, _session_maker

    if _engine is None:
        database_url = settings.database_url

        engine_kwargs = {}
        if settings.env == "test":
            engine_kwargs["poolclass"] = NullPool
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        _engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            **engine_kwargs,
        )

        if _engine.dialect.name == "sqlite":
            event.listen(_engine, "connect", _enable_sqlite_foreign_keys)

        _session_maker = sessionmaker(
            bind=_engine,
            class_=Session,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    return _engine


@contextmanager
def get_session():
    """Get database session."""
    get_engine()  # Ensure engine is initialized

    with _session_maker() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def create_tables() -> None:
    """Create all database tables."""
    import sandbox_agents.models  # noqa: F401  (register tables)

    engine = get_engine()
    SQLModel.metadata.create_all(engine)


def clean_database() -> None:
    """Remove all rows from every table (used between tests)."""
    engine = get_engine()
    tables = list(reversed(SQLModel.metadata.sorted_tables))
    with get_session() as session:
        if engine.dialect.name == "sqlite":
            for table in tables:
                session.execute(table.delete())
            return

        table_names = [f'"{table.name}"' for table in tables]
        if table_names:
            truncate_stmt = (
                "TRUNCATE " + ", ".join(table_names) + " RESTART IDENTITY CASCADE"
            )
            session.execute(text(truncate_stmt))


def close_db() -> None:
    """Close database connections."""
    global _engine, _session_maker

    if _engine:
        _engine.dispose()
        _engine = None
        _session_maker = None
