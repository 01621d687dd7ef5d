from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from pathlib import Path

# Base class for declarative models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Build an engine for DATABASE_URL.

    SQLite is used for local runs and tests (in-memory databases share one
    connection); Postgres gets a sized connection pool.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        else:
            db_path = database_url.split("///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(database_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            # SQLite ignores ON DELETE CASCADE unless this pragma is set per connection
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections after 1 hour
        pool_pre_ping=True      # Test connection health before use
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False keeps returned rows readable after the session closes
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
