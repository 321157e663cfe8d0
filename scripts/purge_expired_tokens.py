"""
Delete refresh token records that can no longer matter.

Only rotated/revoked records whose expiry lies more than TOKEN_RETENTION_DAYS
in the past are removed; active records are never touched. Run periodically,
e.g. from cron:

  python scripts/purge_expired_tokens.py
  python scripts/purge_expired_tokens.py --interval 3600
"""

import argparse
import logging
import sys
import time
from datetime import timedelta
from pathlib import Path

# Add repository root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from refresh_guard.config import settings
from refresh_guard.core.clock import SystemClock
from refresh_guard.core.database import get_session_factory
from refresh_guard.core.exceptions import StoreUnavailableError
from refresh_guard.services.token_store import SqlTokenStore

logger = logging.getLogger("purge_expired_tokens")


def purge_once(store: SqlTokenStore, retention_days: int) -> int:
    cutoff = SystemClock().now() - timedelta(days=retention_days)
    purged = store.purge_expired(cutoff)
    logger.info(f"Purged {purged} refresh token record(s) expired before {cutoff.isoformat()}")
    return purged


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--retention-days", type=int, default=settings.TOKEN_RETENTION_DAYS)
    parser.add_argument("--interval", type=int, default=0, help="repeat every N seconds (0 = run once)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    store = SqlTokenStore(get_session_factory())

    if args.interval <= 0:
        purge_once(store, args.retention_days)
        return

    try:
        while True:
            try:
                purge_once(store, args.retention_days)
            except StoreUnavailableError as exc:
                logger.error(f"Purge failed, will retry next cycle: {exc}")
            time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("Purge loop stopped")


if __name__ == "__main__":
    main()
