"""Report differences between the lottery models and a live database schema."""

from __future__ import annotations

import argparse
import sys

from alembic.autogenerate import api as ag_api
from alembic.runtime.migration import MigrationContext
from dotenv import load_dotenv

from slotlottery.db.engine import make_engine
from slotlottery.models import Base


def _print_ops(ops, indent: int = 0) -> None:
    prefix = "  " * indent
    for op in ops:
        print(f"{prefix}- {op}")
        sub_ops = getattr(op, "ops", None)
        if sub_ops:
            _print_ops(sub_ops, indent + 1)


def main(argv=None) -> int:
    """Compare the lottery models with the live schema.

    Exit code 0 means no drift, 1 means differences were found and 2 means
    the check itself failed.
    """
    load_dotenv()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db-url", default=None, help="overrides DB_URL")
    args = parser.parse_args(argv)

    engine = make_engine(database_url=args.db_url)
    url_display = engine.url.render_as_string(hide_password=True)
    try:
        with engine.connect() as connection:
            context = MigrationContext.configure(
                connection=connection,
                opts={
                    "compare_type": True,
                    "compare_server_default": True,
                    "render_as_batch": connection.dialect.name == "sqlite",
                },
            )
            migration = ag_api.produce_migrations(context, Base.metadata)
    except Exception as exc:
        print(f"Schema drift check: ERROR for {url_display}: {exc}", file=sys.stderr)
        return 2
    finally:
        engine.dispose()

    upgrade_ops = migration.upgrade_ops
    if upgrade_ops is None or upgrade_ops.is_empty():
        print(f"Schema drift check: OK for {url_display}.")
        return 0
    print(f"Schema drift check: FAILED for {url_display} ({len(upgrade_ops.ops)} changes):")
    _print_ops(upgrade_ops.ops or [])
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
