"""Re-encryption of stored secrets under a new key (or the current format).

Walks every encrypted column in batches. For each value:

1. Decrypt with the old key.
2. If that fails, classify the stored value. Legacy plaintext is encrypted
   as is; a value the new key already opens is counted as done, so an
   interrupted run can simply be restarted. Anything else is a failure for
   that record only.
3. Encrypt with the new key, write, re-read and decrypt again to verify.
   Each write runs in a savepoint; an error there fails that record only.

Identical old and new keys normalize every value to the current ``v1``
envelope. A database backup is taken first unless running dry.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keywarden.exceptions import DecryptionError
from keywarden.models.resource_field import ResourceField
from keywarden.models.totp_credential import TOTPCredential
from keywarden.services.db_backup import backup_database
from keywarden.utils.encryption import EnvelopeCipher, StoredValueKind, classify_stored_value
from keywarden.utils.security import sanitize_log_message

logger = logging.getLogger(__name__)


@dataclass
class RotationConfig:
    old_key: Union[str, bytes]
    new_key: Union[str, bytes]
    dry_run: bool = False
    batch_size: int = 100

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be a positive number")


@dataclass(frozen=True)
class RotationTarget:
    """One encrypted column. ``label`` names the column used in log lines."""

    name: str
    model: Any
    column: str
    label: str


ROTATION_TARGETS = [
    RotationTarget("TOTPCredential.secret", TOTPCredential, "secret", "account_name"),
    RotationTarget("TOTPCredential.backup_key", TOTPCredential, "backup_key", "account_name"),
    RotationTarget("ResourceField.value", ResourceField, "value", "name"),
]


@dataclass
class ModelRotationStats:
    model: str
    scanned: int = 0
    updated: int = 0
    verified: int = 0
    failed: int = 0
    verification_failed: int = 0
    would_update: int = 0

    @property
    def failures(self) -> int:
        return self.failed + self.verification_failed

    def summary(self) -> str:
        return (
            f"{self.model}: Scanned {self.scanned}, Updated {self.updated}, "
            f"Verified {self.verified}, Failed {self.failed}, "
            f"Verification failed {self.verification_failed}, Would update {self.would_update}"
        )


@dataclass
class RotationReport:
    dry_run: bool
    backup_path: Optional[Path] = None
    models: List[ModelRotationStats] = field(default_factory=list)

    @property
    def total_failures(self) -> int:
        return sum(m.failures for m in self.models)

    @property
    def ok(self) -> bool:
        return self.total_failures == 0


class KeyRotationJob:
    """Rotate every encrypted column from ``config.old_key`` to ``config.new_key``.

    Each batch commits on its own; a failure mid-run leaves earlier batches
    rotated. Not safe to run alongside live writes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        config: RotationConfig,
        backup: Callable[[], Path] = backup_database,
        targets: Optional[List[RotationTarget]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.backup = backup
        self.targets = targets or ROTATION_TARGETS
        self.old_cipher = EnvelopeCipher(config.old_key)
        self.new_cipher = EnvelopeCipher(config.new_key)
        self.same_key = self.old_cipher.key == self.new_cipher.key

    async def run(self) -> RotationReport:
        report = RotationReport(dry_run=self.config.dry_run)

        logger.info(
            "Starting key rotation (dry run: %s, batch size: %d)",
            self.config.dry_run, self.config.batch_size,
        )
        if self.same_key:
            logger.info("Old key matches new key; values will be normalized to the v1 format")
        else:
            logger.warning("Rotating keys: old and new keys differ")

        if not self.config.dry_run:
            report.backup_path = self.backup()

        for target in self.targets:
            stats = await self.rotate_target(target)
            logger.info(stats.summary())
            report.models.append(stats)

        if report.ok:
            logger.info("Rotation completed successfully")
        else:
            logger.error(
                "Rotation completed with %d failures; check logs and intervene manually",
                report.total_failures,
            )
        return report

    async def rotate_target(self, target: RotationTarget) -> ModelRotationStats:
        stats = ModelRotationStats(model=target.name)
        model = target.model
        column = getattr(model, target.column)
        last_id: Optional[str] = None

        while True:
            async with self.session_factory() as session:
                query = select(model.id, column, getattr(model, target.label)).order_by(model.id)
                if last_id is not None:
                    query = query.where(model.id > last_id)
                rows = (await session.execute(query.limit(self.config.batch_size))).all()
                if not rows:
                    break

                for record_id, value, label in rows:
                    stats.scanned += 1
                    await self._rotate_record(session, target, record_id, value, label, stats)

                if not self.config.dry_run:
                    await session.commit()
                last_id = rows[-1][0]

        return stats

    async def _rotate_record(
        self,
        session: AsyncSession,
        target: RotationTarget,
        record_id: str,
        value: Optional[str],
        label: Optional[str],
        stats: ModelRotationStats,
    ) -> None:
        kind = classify_stored_value(value)
        if kind is StoredValueKind.EMPTY:
            return

        try:
            plaintext = self.old_cipher.decrypt(value)
        except DecryptionError:
            if kind is StoredValueKind.CURRENT and self._opens_with_new_key(value):
                # Rotated by an earlier, interrupted run
                stats.verified += 1
                return
            if kind is not StoredValueKind.PLAINTEXT:
                logger.error("Failed to decrypt %s %s (%s)", target.name, record_id, kind.value)
                stats.failed += 1
                return
            plaintext = value
            logger.warning(
                "Found unencrypted data for %s %s (%s); encrypting now",
                target.name, record_id, sanitize_log_message(label),
            )

        if self.same_key and kind is StoredValueKind.CURRENT:
            stats.verified += 1
            return

        if self.config.dry_run:
            stats.would_update += 1
            return

        model = target.model
        try:
            async with session.begin_nested():
                await session.execute(
                    update(model)
                    .where(model.id == record_id)
                    .values({target.column: self.new_cipher.encrypt(plaintext)})
                    .execution_options(synchronize_session=False)
                )
                stored = (
                    await session.execute(
                        select(getattr(model, target.column)).where(model.id == record_id)
                    )
                ).scalar_one()
        except Exception:
            # The savepoint is rolled back; the rest of the batch carries on
            logger.error("Failed to re-encrypt %s %s", target.name, record_id, exc_info=True)
            stats.failed += 1
            return
        stats.updated += 1

        try:
            round_trip = self.new_cipher.decrypt(stored)
        except DecryptionError:
            round_trip = None
        if round_trip == plaintext:
            stats.verified += 1
        else:
            logger.error("Verification failed for %s %s", target.name, record_id)
            stats.verification_failed += 1

    def _opens_with_new_key(self, value: str) -> bool:
        if self.same_key:
            return False
        try:
            self.new_cipher.decrypt(value)
        except DecryptionError:
            return False
        return True
