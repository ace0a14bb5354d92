"""
Create calendar sync tables

Creates:
- calendar_events
- push_notification_channels
- sync_cursors
- calendar_assignments
- calendar_scopes
- calendar_access

Run with: python migrations/create_calendar_sync_tables.py [downgrade]
"""

import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from calsync.config import load_settings
from calsync.database import Base, create_db_engine
from calsync import models_calendar  # noqa: F401 - registers tables on Base

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)

TABLES = [
    "calendar_events",
    "push_notification_channels",
    "sync_cursors",
    "calendar_assignments",
    "calendar_scopes",
    "calendar_access",
]


def upgrade(engine):
    """Create any calendar sync table that does not exist yet"""
    existing = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine, tables=[Base.metadata.tables[name] for name in TABLES], checkfirst=True)
    for name in TABLES:
        if name in existing:
            logger.info(f"ℹ️  {name} table already exists")
        else:
            logger.info(f"✅ Created {name} table")


def downgrade(engine):
    """Drop the calendar sync tables"""
    Base.metadata.drop_all(bind=engine, tables=[Base.metadata.tables[name] for name in TABLES], checkfirst=True)
    logger.info("✅ Dropped calendar sync tables")


if __name__ == "__main__":
    engine = create_db_engine(load_settings())
    try:
        if len(sys.argv) > 1 and sys.argv[1] == "downgrade":
            downgrade(engine)
        else:
            upgrade(engine)
    except Exception as e:
        logger.error(f"❌ Migration failed: {e}")
        sys.exit(1)
    finally:
        engine.dispose()
