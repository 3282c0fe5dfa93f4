from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from gim.core.config import settings
from gim.core.logging_config import get_logger

# Register tables on SQLModel.metadata
import gim.models  # noqa: F401

logger = get_logger(__name__)

DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            options["poolclass"] = StaticPool
        return create_engine(url, echo=False, **options)

    return create_engine(
        url,
        echo=False,  # Disable query logging in production
        pool_size=5,
        max_overflow=10,  # Allow burst connections
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,  # Wait up to 30s for a connection
        connect_args={"connect_timeout": 10},
    )


engine = build_engine(DATABASE_URL)


@event.listens_for(Engine, "connect")
def set_connection_parameters(dbapi_connection, connection_record):
    """Statement timeout on PostgreSQL, FK enforcement on SQLite."""
    module = type(dbapi_connection).__module__
    cursor = dbapi_connection.cursor()
    try:
        if module.startswith("sqlite3"):
            cursor.execute("PRAGMA foreign_keys=ON")
        else:
            # Set statement timeout (30 seconds max query time)
            cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning("Could not set connection parameters", error=str(e))
    finally:
        cursor.close()


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables(bind: Engine = engine):
    SQLModel.metadata.create_all(bind)
