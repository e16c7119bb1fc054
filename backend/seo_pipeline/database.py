from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .schemas import Base

logger = structlog.get_logger(__name__)


def create_cache_engine(db_path: str) -> Engine:
    """
    Creates the SQLite engine backing the cache.

    ``":memory:"`` gives a private in-memory database shared by every
    session of the returned engine.
    """
    if db_path == ":memory:":
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        path = Path(db_path)
        if not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("database.data_dir_created", dir=str(path.parent))
        engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _enable_wal(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    Base.metadata.create_all(bind=engine)
    logger.info("database.initialized", db_path=db_path)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    # SessionLocal-style factory; sessions are short-lived, one per cache call
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
