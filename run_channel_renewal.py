"""
Channel Renewal Runner
Run one renewal pass and exit: python run_channel_renewal.py

Exit code 0 on a clean pass (per-channel failures are logged, not fatal),
1 when configuration or credentials cannot be loaded.
"""

import asyncio
import logging
import sys
from typing import Optional

from calsync import models_calendar  # noqa: F401 - registers tables on Base
from calsync.config import Settings, load_settings
from calsync.database import Base, create_db_engine, create_session_factory
from calsync.domain.calendar_sync.client import CalendarClient, GoogleCalendarClient
from calsync.domain.calendar_sync.errors import ConfigurationError
from calsync.domain.calendar_sync.renewal import run_renewal_pass

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def renew_once(settings: Settings, client: Optional[CalendarClient] = None) -> None:
    engine = create_db_engine(settings)
    Base.metadata.create_all(bind=engine, checkfirst=True)
    owns_client = client is None
    client = client or GoogleCalendarClient(settings)
    try:
        await run_renewal_pass(create_session_factory(engine), client, settings)
    finally:
        if owns_client:
            await client.aclose()
        engine.dispose()


def main(environ: Optional[dict] = None, client: Optional[CalendarClient] = None) -> int:
    logger.info("🚀 Starting channel renewal...")
    try:
        settings = load_settings(environ)
        settings.require_provider()
    except ConfigurationError as e:
        logger.error(f"❌ Cannot load configuration: {e}")
        return 1

    asyncio.run(renew_once(settings, client))
    logger.info("✅ Channel renewal pass complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
