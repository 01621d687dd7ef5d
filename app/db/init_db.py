"""
Create ResearchDesk tables and indexes.

Run this script to set up your database:
    python -m app.db.init_db
"""
from sqlalchemy.engine import Engine

from app.config import get_settings
from app.logging_config import get_logger, setup_logging
from .database import Base, create_db_engine
from . import models  # noqa: F401  (registers tables on Base.metadata)

logger = get_logger(__name__)


def init_db(engine: Engine) -> None:
    """Create all tables (indexes come from each model's __table_args__)."""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database tables ready: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(level=settings.log_level)
    init_db(create_db_engine(settings.database_url))
