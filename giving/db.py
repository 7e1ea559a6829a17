from functools import lru_cache
from typing import Callable

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from giving.core.config import settings
from giving.core.logging_config import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], Session]


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Engine for the configured DATABASE_URL, created on first use."""
    url = settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,
        pool_timeout=30,  # Never wait forever for a connection
        connect_args={"connect_timeout": 10},
    )

    @event.listens_for(engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """Bound every statement so a stuck query can't hang a delivery."""
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("SET statement_timeout = '30s'")
        except Exception as e:
            logger.warning("Could not set statement timeout", error=str(e))
        finally:
            cursor.close()

    return engine


def new_session() -> Session:
    """Session factory handed to the ledger, processor and outbox."""
    return Session(get_engine())


def create_db_and_tables(engine: Engine | None = None) -> None:
    # Register all tables on the metadata before creating them
    import giving.models  # noqa: F401

    SQLModel.metadata.create_all(engine or get_engine())
