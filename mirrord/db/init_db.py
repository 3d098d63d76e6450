from __future__ import annotations

import logging

from sqlalchemy import Engine, inspect, text

from mirrord.db.models import Base
from mirrord.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database(engine: Engine | None = None) -> Engine:
    """Create the run-history, lease and fingerprint tables if they are missing."""
    engine = engine or get_engine()
    existing = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)
    created = sorted(set(Base.metadata.tables) - existing)
    if created:
        logger.info("Created state tables: %s", ", ".join(created))

    if engine.url.drivername.startswith("sqlite") and engine.url.database not in (None, "", ":memory:"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return engine
