# /scripts/init_db.py
"""Создание таблиц с повторами (контейнер БД может подниматься дольше бота)"""

import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.database import dispose_db, init_db, test_connection

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_RETRIES = 10
RETRY_DELAY_SECONDS = 2


async def init_db_with_retries() -> None:
    try:
        for attempt in range(1, MAX_RETRIES + 1):
            logger.info(f"Connecting to database, attempt {attempt}/{MAX_RETRIES}")
            if await test_connection():
                await init_db()
                return
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_DELAY_SECONDS)
        raise RuntimeError(f"Database is unreachable after {MAX_RETRIES} attempts")
    finally:
        await dispose_db()


if __name__ == "__main__":
    asyncio.run(init_db_with_retries())
