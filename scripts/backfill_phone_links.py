"""
Backfill phone lookup keys and ledger links for existing users.

Recomputes ``mobile_normalized`` from the stored phone, flags users without
a usable phone with ``needs_phone_update``, and opens a current phone link
for every number nobody owns in the ledger yet. Numbers that are already
current for another account are reported and left alone.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatbook import ledger, models
from chatbook.core import get_settings
from chatbook.database import Database
from chatbook.phones import parse_phone


logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    scanned: int = 0
    updated: int = 0
    flagged: int = 0
    links_opened: int = 0
    conflicts: list[tuple[str, str, str]] = field(default_factory=list)


def backfill(db: Session, *, dry_run: bool, batch_size: int = 200) -> BackfillReport:
    report = BackfillReport()
    # lookup key -> uid for links opened during this run (dry runs write nothing)
    planned: dict[str, str] = {}
    last_id = 0

    while True:
        users = db.scalars(
            select(models.User)
            .where(models.User.id > last_id)
            .order_by(models.User.id)
            .limit(batch_size)
        ).all()
        if not users:
            break

        for user in users:
            report.scanned += 1
            phone = parse_phone(user.mobile)
            key = phone.lookup or None
            needs_update = key is None

            if user.mobile_normalized != key or bool(user.needs_phone_update) != needs_update:
                report.updated += 1
                if needs_update:
                    report.flagged += 1
                if not dry_run:
                    user.mobile_normalized = key
                    user.needs_phone_update = needs_update

            if key is None:
                continue

            current = ledger.get_current_link(db, key)
            owner = current.user_id if current is not None else planned.get(key)
            if owner is None and not dry_run:
                try:
                    with db.begin_nested():
                        ledger.open_link(db, user.uid, key, phone.display)
                except IntegrityError:
                    # opened by a concurrent writer since the lookup above
                    current = ledger.get_current_link(db, key)
                    owner = current.user_id if current is not None else "unknown"
            if owner is None:
                planned[key] = user.uid
                report.links_opened += 1
            elif owner != user.uid:
                report.conflicts.append((key, user.uid, owner))
                logger.warning(
                    "Phone %s of user %s is already owned by %s", key, user.uid, owner
                )

        last_id = users[-1].id
        if dry_run:
            db.rollback()
        else:
            db.commit()

    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill phone ownership links")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=200,
        help="Users processed per transaction",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without saving",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    database = Database(get_settings().DATABASE_URL)
    database.create_all()

    try:
        with database.session() as db:
            report = backfill(db, dry_run=args.dry_run, batch_size=args.batch_size)
    except Exception:
        logger.exception("Backfill failed")
        return 1
    finally:
        database.dispose()

    logger.info("Scanned %d users", report.scanned)
    logger.info("Updated %d users (%d flagged for a new phone)", report.updated, report.flagged)
    logger.info("Opened %d phone links", report.links_opened)
    logger.info("Found %d ownership conflicts", len(report.conflicts))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
