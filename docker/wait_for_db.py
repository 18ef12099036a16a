"""Block until the storefront database accepts connections (container entrypoint)."""
import logging
import os
import time

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from storefront.config import Config

MAX_ATTEMPTS = int(os.environ.get("DB_WAIT_ATTEMPTS", "30"))
SLEEP_SECONDS = int(os.environ.get("DB_WAIT_INTERVAL", "2"))

logger = logging.getLogger("storefront.wait_for_db")


def main() -> None:
    logging.basicConfig(level=Config.LOG_LEVEL)
    engine = create_engine(Config.DATABASE_URL, pool_pre_ping=True)
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("Database connection established")
            return
        except OperationalError as exc:
            logger.warning("Attempt %d/%d failed: %s", attempt, MAX_ATTEMPTS, exc)
            time.sleep(SLEEP_SECONDS)

    raise RuntimeError("Database not reachable after waiting.")


if __name__ == "__main__":
    main()
