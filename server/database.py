"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from timeline_config import default_thresholds

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///timeline.db")

engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# System-wide timeline thresholds, seeded into the config table (user_id NULL)
DEFAULT_THRESHOLDS = default_thresholds()


def init_db(bind=None, session_factory=None):
    """Create all tables and seed the default thresholds."""
    from models import Location, TimelineStay, TimelineTrip, TimelineDataGap, Config  # noqa: F401

    bind = bind or engine
    logger.info("Initializing database at %s", bind.url)
    Base.metadata.create_all(bind=bind)
    _seed_config(session_factory or sessionmaker(bind=bind))


def _seed_config(session_factory):
    """Insert the default thresholds that are not already present."""
    from models import Config

    db = session_factory()
    try:
        existing = {
            key for (key,) in db.query(Config.key).filter(Config.user_id.is_(None)).all()
        }
        missing = {k: v for k, v in DEFAULT_THRESHOLDS.items() if k not in existing}
        for key, value in missing.items():
            db.add(Config(user_id=None, key=key, value=value))
        db.commit()
        if missing:
            logger.info("Seeded %d default timeline thresholds", len(missing))
    finally:
        db.close()
