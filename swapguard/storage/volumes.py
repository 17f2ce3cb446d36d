"""
Volume & Checkpoint Manager
~~~~~~~~~~~~~~~~~~~~~~~~~~~

Idempotent create, backup and restore of named volumes, plus process
checkpoint/restore of a running unit.

Archives are written under a ``.partial`` name and renamed into place
once complete. The ledger row is inserted only after the rename and is
verified straight away, so a backup record is never visible for a
half-written archive and a truncated export fails the backup step
rather than a later rollback.
"""

from __future__ import annotations

import logging
import os
import tarfile
from datetime import UTC, datetime

from swapguard.core.models import BackupRecord
from swapguard.core.status import RecordKind
from swapguard.exceptions import (
    BackupVerificationError,
    IncompleteRestoreError,
    RuntimeCommandError,
    VolumeOperationError,
)
from swapguard.runtime.base import RESTORE_MARKER, ContainerRuntime
from swapguard.storage.ledger import AttemptLedger

__all__ = ["VolumeManager"]

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")


def _discard_partial(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class VolumeManager:
    """
    Creates, backs up and restores persistent volumes.

    Args:
        runtime: The container runtime hosting the volumes.
        ledger: Where completed backup records are registered.
        archive_dir: Host directory receiving archives.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        ledger: AttemptLedger,
        archive_dir: str,
    ) -> None:
        self._runtime = runtime
        self._ledger = ledger
        self._archive_dir = os.path.abspath(archive_dir)
        os.makedirs(self._archive_dir, exist_ok=True)

    @property
    def archive_dir(self) -> str:
        return self._archive_dir

    def _archive_path(self, source: str, kind: RecordKind, attempt_id: str) -> str:
        name = f"{source}-{kind.value}-{attempt_id}-{_timestamp()}.tar"
        return os.path.join(self._archive_dir, name)

    # ── Volumes ──────────────────────────────────────────────────

    def exists(self, name: str) -> bool:
        try:
            return self._runtime.volume_exists(name)
        except RuntimeCommandError as exc:
            raise VolumeOperationError(
                f"Cannot inspect volume {name}: {exc}"
            ) from exc

    def create_volume(self, name: str) -> bool:
        """
        Create a volume unless it already exists.

        Returns:
            True if the volume was created, False if it already existed.
        """
        if self.exists(name):
            logger.debug("Volume %s already exists", name)
            return False
        try:
            self._runtime.create_volume(name)
        except RuntimeCommandError as exc:
            raise VolumeOperationError(f"Cannot create volume {name}: {exc}") from exc
        logger.info("Created volume %s", name)
        return True

    def check_restore_complete(self, name: str) -> None:
        """
        Refuse a volume that an interrupted restore left half-swapped.

        Raises:
            IncompleteRestoreError: If the restore marker is present.
        """
        if not self.exists(name):
            return
        try:
            marked = self._runtime.file_size(name, RESTORE_MARKER) is not None
        except RuntimeCommandError as exc:
            raise VolumeOperationError(
                f"Cannot inspect volume {name}: {exc}"
            ) from exc
        if marked:
            raise IncompleteRestoreError(name, RESTORE_MARKER)

    def backup_volume(
        self,
        name: str,
        attempt_id: str,
        best_effort: bool = False,
    ) -> BackupRecord | None:
        """
        Export a volume to a uniquely named archive.

        Args:
            name: Volume to export.
            attempt_id: Attempt the backup belongs to.
            best_effort: Log and return None instead of raising. Only
                used on a first-ever deploy, when there is nothing to lose.

        Raises:
            VolumeOperationError: If the volume is missing, export fails or
                the archive fails verification, and ``best_effort`` is False.
        """
        try:
            record = self._export(name, attempt_id)
        except VolumeOperationError as exc:
            if not best_effort:
                raise
            logger.warning("Best-effort backup of %s skipped: %s", name, exc)
            return None
        logger.info("Backed up volume %s to %s", name, record.archive)
        return record

    def _export(self, name: str, attempt_id: str) -> BackupRecord:
        if not self.exists(name):
            raise VolumeOperationError(f"Cannot back up missing volume {name}")
        archive = self._archive_path(name, RecordKind.VOLUME, attempt_id)
        partial = f"{archive}.partial"
        try:
            self._runtime.export_volume(name, partial)
            if not os.path.isfile(partial):
                raise VolumeOperationError(
                    f"Export of volume {name} produced no archive"
                )
            os.replace(partial, archive)
        except RuntimeCommandError as exc:
            _discard_partial(partial)
            raise VolumeOperationError(f"Cannot export volume {name}: {exc}") from exc
        except VolumeOperationError:
            _discard_partial(partial)
            raise

        record = BackupRecord(
            attempt_id=attempt_id,
            kind=RecordKind.VOLUME,
            source=name,
            archive=archive,
        )
        self._register(record)
        return record

    def _register(self, record: BackupRecord) -> None:
        """Record a finished archive, dropping it again if it is unusable."""
        self._ledger.add_record(record)
        try:
            self.verify(record)
        except BackupVerificationError:
            self.discard(record)
            raise

    def verify(self, record: BackupRecord) -> None:
        """
        Check that a backup record is registered and its archive is complete.

        Raises:
            BackupVerificationError: If any check fails.
        """
        if not self._ledger.has_record(record.archive):
            raise BackupVerificationError(
                f"Backup record for {record.archive} is not registered"
            )
        if not os.path.isfile(record.archive):
            raise BackupVerificationError(f"Archive {record.archive} is missing")
        if os.path.getsize(record.archive) == 0:
            raise BackupVerificationError(f"Archive {record.archive} is empty")
        if record.kind is RecordKind.VOLUME and not tarfile.is_tarfile(record.archive):
            raise BackupVerificationError(
                f"Archive {record.archive} is not a tar archive"
            )

    def restore_volume(self, name: str, record: BackupRecord) -> None:
        """
        Replace the contents of ``name`` with a verified backup.

        The archive is imported into a staging volume first; the live
        volume is only touched once the staging copy is complete.

        Raises:
            BackupVerificationError: If the record fails verification.
            IncompleteRestoreError: If an earlier restore of ``name`` was
                interrupted.
            VolumeOperationError: If import or swap fails.
        """
        self.verify(record)
        self.check_restore_complete(name)
        staging = f"{name}-staging-{record.attempt_id}"

        try:
            if self._runtime.volume_exists(staging):
                self._runtime.remove_volume(staging)
            self._runtime.create_volume(staging)
            self._runtime.import_volume(staging, record.archive)
        except RuntimeCommandError as exc:
            self._drop_staging(staging)
            raise VolumeOperationError(
                f"Cannot stage archive {record.archive} for volume {name}: {exc}"
            ) from exc

        try:
            if not self._runtime.volume_exists(name):
                self._runtime.create_volume(name)
            self._runtime.swap_volume_contents(staging, name)
        except RuntimeCommandError as exc:
            # The staging volume still holds a complete copy; keep it.
            raise VolumeOperationError(
                f"Cannot swap staging volume {staging} into {name}: {exc}. "
                f"Staging volume {staging} was kept for manual recovery."
            ) from exc

        self._drop_staging(staging)
        logger.info("Restored volume %s from %s", name, record.archive)

    def _drop_staging(self, staging: str) -> None:
        try:
            if self._runtime.volume_exists(staging):
                self._runtime.remove_volume(staging)
        except RuntimeCommandError as exc:
            logger.warning("Could not remove staging volume %s: %s", staging, exc)

    # ── Checkpoints ──────────────────────────────────────────────

    def checkpoint_unit(self, unit: str, attempt_id: str) -> BackupRecord:
        """
        Checkpoint a running unit to an archive. The unit is left stopped.

        Raises:
            VolumeOperationError: If the checkpoint cannot be written.
        """
        archive = self._archive_path(unit, RecordKind.CHECKPOINT, attempt_id)
        partial = f"{archive}.partial"
        try:
            self._runtime.checkpoint_unit(unit, partial)
            if not os.path.isfile(partial) or os.path.getsize(partial) == 0:
                raise VolumeOperationError(f"Checkpoint of {unit} produced no archive")
            os.replace(partial, archive)
        except RuntimeCommandError as exc:
            _discard_partial(partial)
            raise VolumeOperationError(f"Cannot checkpoint unit {unit}: {exc}") from exc
        except VolumeOperationError:
            _discard_partial(partial)
            raise

        record = BackupRecord(
            attempt_id=attempt_id,
            kind=RecordKind.CHECKPOINT,
            source=unit,
            archive=archive,
        )
        self._register(record)
        logger.info("Checkpointed unit %s to %s", unit, archive)
        return record

    def restore_checkpoint(self, record: BackupRecord, name: str | None = None) -> str:
        """
        Resume a unit from a checkpoint archive.

        Returns:
            The id of the restored unit.
        """
        self.verify(record)
        target = name or record.source
        try:
            unit_id = self._runtime.restore_checkpoint(record.archive, target)
        except RuntimeCommandError as exc:
            raise VolumeOperationError(
                f"Cannot restore checkpoint {record.archive}: {exc}"
            ) from exc
        logger.info("Restored unit %s from checkpoint %s", target, record.archive)
        return unit_id

    # ── Cleanup ──────────────────────────────────────────────────

    def discard(self, record: BackupRecord) -> None:
        """Delete an archive and forget its record."""
        try:
            os.remove(record.archive)
        except FileNotFoundError:
            logger.debug("Archive %s already gone", record.archive)
        self._ledger.remove_record(record.archive)
        logger.debug("Discarded %s archive %s", record.kind.value, record.archive)
