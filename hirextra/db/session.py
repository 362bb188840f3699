import logging
import os
import socket
from contextlib import closing

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from hirextra.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach the database."""
    logger.warning(f"Could not connect to database: {exc}")
    logger.warning("The application will start but ingestion will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except ArgumentError as parse_error:  # pragma: no cover
        logger.warning(f"Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    if url.get_backend_name() == "sqlite":
        logger.warning(f"  SQLite database: {url.database}")
        return

    logger.warning(
        "  Database connection settings: "
        f"dialect={url.get_backend_name()} driver={url.get_driver_name() or 'default'} "
        f"host={url.host or 'localhost'} port={url.port or '(default)'} "
        f"database={url.database} username={url.username} "
        f"SKIP_DB_INIT={os.getenv('SKIP_DB_INIT')!r}"
    )

    host = url.host or "localhost"
    port = url.port or 5432

    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            logger.warning(f"  Socket check: able to reach {host}:{port}")
    except OSError as socket_err:
        logger.warning(f"  Socket check: unable to reach {host}:{port} ({socket_err})")


def _create_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # The ingestion worker thread shares the engine with request handlers.
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = _create_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            _report_connection_failure(e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = _create_engine(settings.database_url)
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_factory():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def init_tables(engine=None) -> None:
    """Create the ingestion tables if they do not exist yet."""
    # Registers the models on Base.metadata.
    from hirextra.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
