import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

_engine = None

# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def _masked_url(database_url: str) -> str:
    try:
        url = make_url(database_url)
    except Exception:  # pragma: no cover
        return "<unparseable DATABASE_URL>"
    return url.render_as_string(hide_password=True)


def get_engine():
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database_url, pool_pre_ping=True)
        try:
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(
                "Could not connect to database %s: %s. Import operations will fail until it is reachable.",
                _masked_url(settings.database_url),
                e,
            )
    return _engine


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def get_db():
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(engine=None) -> None:
    """Create all ORM tables that do not exist yet."""
    # Registers the models on Base.metadata.
    from app.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
