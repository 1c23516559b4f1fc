"""Resolve overdue lottery sessions; intended to be run from cron or a scheduler."""

from __future__ import annotations

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

from slotlottery.db.engine import get_sessionmaker, make_engine
from slotlottery.lottery.automation import auto_select_overdue
from slotlottery.notifications import LoggingNotifier, WebhookNotifier

logger = logging.getLogger("slotlottery.sweep")


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--session-id", type=int, default=None, help="only this lottery session")
    parser.add_argument(
        "--actor-id",
        type=int,
        default=None,
        help="run on behalf of this organizer instead of the system principal",
    )
    parser.add_argument("--db-url", default=None, help="overrides DB_URL")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = _parse_args(argv)

    notifier = WebhookNotifier() if os.getenv("NOTIFY_WEBHOOK_URL") else LoggingNotifier()
    engine = make_engine(database_url=args.db_url)
    try:
        report = auto_select_overdue(
            get_sessionmaker(engine),
            lottery_session_id=args.session_id,
            actor_id=args.actor_id,
            notifier=notifier,
        )
    finally:
        engine.dispose()

    for result in report.results:
        logger.info(
            "session=%s outcome=%s selected=%s attempts=%s%s",
            result.lottery_session_id,
            result.outcome,
            result.selected_count,
            result.attempts,
            f" error={result.error}" if result.error else "",
        )
    return 1 if report.failed_count else 0


if __name__ == "__main__":
    sys.exit(main())
