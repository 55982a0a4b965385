"""Re-encrypt stored secrets under a new key.

Usage:
    python -m keywarden.scripts.rotate_keys --dry-run
    python -m keywarden.scripts.rotate_keys --from-key <hex> --to-key <hex>

Key resolution (first match wins):
    old key: --from-key, KEYWARDEN_ENCRYPTION_KEY_OLD, KEYWARDEN_ENCRYPTION_KEY
    new key: --to-key, KEYWARDEN_ENCRYPTION_KEY_NEW, KEYWARDEN_ENCRYPTION_KEY

With neither override the current key is used for both, which only
normalizes stored values to the v1 format. Exits 1 if any record failed.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from keywarden.config import (
    ENCRYPTION_KEY_ENV,
    ENCRYPTION_KEY_NEW_ENV,
    ENCRYPTION_KEY_OLD_ENV,
)
from keywarden.exceptions import ConfigurationError
from keywarden.services.db_backup import BackupError
from keywarden.services.key_rotation import KeyRotationJob, RotationConfig
from keywarden.utils.encryption import parse_key

logger = logging.getLogger(__name__)


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive number")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rotate the KeyWarden encryption key")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change; write nothing")
    parser.add_argument("--batch-size", type=positive_int, default=100)
    parser.add_argument("--from-key", help="Old key (64 hex chars)")
    parser.add_argument("--to-key", help="New key (64 hex chars)")
    return parser


def resolve_key(explicit: Optional[str], flag: str, env_var: str, label: str) -> bytes:
    key_hex = explicit or os.getenv(env_var) or os.getenv(ENCRYPTION_KEY_ENV)
    if not key_hex:
        raise ConfigurationError(
            f"{label} key must be provided via {flag}, "
            f"{env_var} or {ENCRYPTION_KEY_ENV}"
        )
    try:
        return parse_key(key_hex.strip())
    except ConfigurationError as e:
        raise ConfigurationError(f"{label} key is invalid: {e}") from e


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = RotationConfig(
            old_key=resolve_key(args.from_key, "--from-key", ENCRYPTION_KEY_OLD_ENV, "Old"),
            new_key=resolve_key(args.to_key, "--to-key", ENCRYPTION_KEY_NEW_ENV, "New"),
            dry_run=args.dry_run,
            batch_size=args.batch_size,
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    from keywarden.db import AsyncSessionLocal

    try:
        report = await KeyRotationJob(AsyncSessionLocal, config).run()
    except BackupError as e:
        logger.error(f"Backup failed, aborting rotation: {e}")
        return 1

    if report.dry_run:
        would_update = sum(m.would_update for m in report.models)
        logger.info(f"Dry run: {would_update} records would be re-encrypted")
    return 0 if report.ok else 1


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(asyncio.run(main()))
