"""
Identity merge tool for Sayso Core.

Links every profile to an account identity keyed by (email, account_type),
creating account identities as needed. The email is the profile email,
falling back to the auth identity email, trimmed and lower-cased; the
account type defaults to "personal".

Usage:
    sayso-merge-identities --data-dir <path> [--verify-only]

Invariants:
    - Merge is idempotent (can be re-run safely); a second run creates and
      links nothing
    - The first profile (by creation time) to claim an (email, account_type)
      pair becomes the auth user of the account identity
    - After a converged run there are no unlinked profiles and no duplicate
      (email, account_type) pairs

How to change safely:
    - Never change the email normalization without a migration; existing
      account identities would stop matching
    - Keep the whole merge in one transaction
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
import uuid
from dataclasses import dataclass

from ..store.database import Database, now_ms

logger = logging.getLogger(__name__)

PENDING_PROFILES_SQL = """
SELECT p.user_id,
       lower(trim(coalesce(p.email, i.email))) AS merge_email,
       coalesce(p.account_type, 'personal') AS merge_account_type
FROM profiles p
JOIN identities i ON i.id = p.user_id
WHERE p.account_identity_id IS NULL
ORDER BY p.created_at, p.user_id
"""


@dataclass
class MergeReport:
    """Outcome of a merge or verification run.

    Attributes:
        accounts_created: Account identities created by this run
        profiles_linked: Profiles linked by this run
        unlinked_profiles: Profiles still without an account identity
        duplicate_pairs: (email, account_type) pairs held by more than one
            account identity
        duration_ms: Run time
    """

    accounts_created: int = 0
    profiles_linked: int = 0
    unlinked_profiles: int = 0
    duplicate_pairs: int = 0
    duration_ms: int = 0

    @property
    def converged(self) -> bool:
        return self.unlinked_profiles == 0 and self.duplicate_pairs == 0


async def verify_merge(db: Database) -> MergeReport:
    """Count what a converged merge must leave at zero."""
    with db.connect() as conn:
        unlinked = conn.execute(
            "SELECT COUNT(*) FROM profiles WHERE account_identity_id IS NULL"
        ).fetchone()[0]
        duplicates = conn.execute(
            """
            SELECT COUNT(*) FROM (
                SELECT lower(trim(email)), account_type FROM account_identities
                GROUP BY lower(trim(email)), account_type
                HAVING COUNT(*) > 1
            )
            """
        ).fetchone()[0]
    return MergeReport(unlinked_profiles=unlinked, duplicate_pairs=duplicates)


async def merge_identities(db: Database) -> MergeReport:
    """Link every unlinked profile to its account identity.

    Returns:
        Report with this run's counts and the post-merge verification
    """
    start = time.monotonic()
    created = 0
    linked = 0

    with db.transaction() as conn:
        pending = conn.execute(PENDING_PROFILES_SQL).fetchall()
        for row in pending:
            email = row["merge_email"]
            account_type = row["merge_account_type"]
            if not email:
                logger.warning(
                    "Profile has no email to merge on", extra={"user_id": row["user_id"]}
                )
                continue

            now = now_ms()
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO account_identities
                (id, auth_user_id, email, account_type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), row["user_id"], email, account_type, now, now),
            )
            created += cursor.rowcount

            account = conn.execute(
                "SELECT id FROM account_identities WHERE email = ? AND account_type = ?",
                (email, account_type),
            ).fetchone()
            conn.execute(
                "UPDATE profiles SET account_identity_id = ?, updated_at = ? "
                "WHERE user_id = ? AND account_identity_id IS NULL",
                (account["id"], now, row["user_id"]),
            )
            linked += 1

    report = await verify_merge(db)
    report.accounts_created = created
    report.profiles_linked = linked
    report.duration_ms = int((time.monotonic() - start) * 1000)

    logger.info(
        "Identity merge finished",
        extra={
            "accounts_created": created,
            "profiles_linked": linked,
            "unlinked_profiles": report.unlinked_profiles,
            "duplicate_pairs": report.duplicate_pairs,
        },
    )
    return report


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the identity merge tool."""
    parser = argparse.ArgumentParser(
        description="Link Sayso profiles to account identities by (email, account type)"
    )
    parser.add_argument("--data-dir", required=True, help="Directory holding the database")
    parser.add_argument("--db-filename", default="sayso.db", help="Database file name")
    parser.add_argument(
        "--verify-only", action="store_true", help="Only report unlinked profiles and duplicates"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    db = Database(data_dir=args.data_dir, db_filename=args.db_filename)
    db.initialize()

    if args.verify_only:
        report = asyncio.run(verify_merge(db))
    else:
        report = asyncio.run(merge_identities(db))
        print(f"  Account identities created: {report.accounts_created}")
        print(f"  Profiles linked: {report.profiles_linked}")
        print(f"  Duration: {report.duration_ms}ms")

    print(f"  Unlinked profiles: {report.unlinked_profiles}")
    print(f"  Duplicate (email, account type) pairs: {report.duplicate_pairs}")

    if report.converged:
        print("Identity merge converged")
        sys.exit(0)
    else:
        print("Identity merge has not converged")
        sys.exit(1)


if __name__ == "__main__":
    main()
