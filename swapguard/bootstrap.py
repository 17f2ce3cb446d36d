"""
Database Bootstrapper
~~~~~~~~~~~~~~~~~~~~~

Decides, once per deploy attempt, where the live database comes from:

1. A live database already in the data volume always wins.
2. Otherwise the replication agent restores into a staging file.
3. A non-empty staging file is renamed onto the live name.
4. Otherwise an empty file is created; the backend's migrations build
   the schema on first start.

The replica restore runs to completion before the staging file is
inspected, so step 3 never races the agent. A data volume that still
carries the marker of an interrupted restore is refused before step 1.
"""

from __future__ import annotations

import logging

from swapguard.config.schema import StorageConfig
from swapguard.core.status import BootstrapState, RestoreOutcome
from swapguard.exceptions import (
    IncompleteRestoreError,
    RestoreAmbiguityError,
    RuntimeCommandError,
    VolumeOperationError,
)
from swapguard.replication import ReplicationAgent
from swapguard.runtime.base import RESTORE_MARKER, ContainerRuntime

__all__ = ["DatabaseBootstrapper"]

logger = logging.getLogger(__name__)


class DatabaseBootstrapper:
    """
    Establishes the live database file for a deploy attempt.

    Args:
        runtime: Container runtime hosting the data volume.
        agent: Replication agent used for the restore step.
        storage: Volume and file names.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        agent: ReplicationAgent,
        storage: StorageConfig,
    ) -> None:
        self._runtime = runtime
        self._agent = agent
        self._storage = storage
        self._state = BootstrapState.UNKNOWN

    @property
    def state(self) -> BootstrapState:
        return self._state

    def run(self) -> BootstrapState:
        """
        Run the decision procedure and return the resulting state.

        Raises:
            IncompleteRestoreError: If an interrupted volume restore left
                the data volume half-swapped.
            RestoreAmbiguityError: If the live file appeared during the
                replica restore.
            VolumeOperationError: If the data volume cannot be inspected
                or written.
        """
        try:
            self._state = self._decide()
        except RuntimeCommandError as exc:
            raise VolumeOperationError(
                f"Database bootstrap failed on volume "
                f"{self._storage.data_volume}: {exc}"
            ) from exc
        return self._state

    def _decide(self) -> BootstrapState:
        volume = self._storage.data_volume
        live = self._storage.database_file
        staging = self._storage.staging_file

        if self._runtime.file_size(volume, RESTORE_MARKER) is not None:
            raise IncompleteRestoreError(volume, RESTORE_MARKER)

        if self._runtime.file_size(volume, live) is not None:
            logger.info("Using existing database %s from volume %s", live, volume)
            return BootstrapState.LOCAL_EXISTS

        if self._runtime.file_size(volume, staging) is not None:
            logger.info("Removing leftover staging file %s", staging)
            self._runtime.remove_file(volume, staging)

        outcome = self._agent.restore(self._storage.staging_path)
        if outcome is RestoreOutcome.FAILED:
            logger.warning("Replica restore failed; continuing without a replica")

        if self._runtime.file_size(volume, live) is not None:
            raise RestoreAmbiguityError(
                f"{live} appeared in volume {volume} while the replica restore "
                f"was running; refusing to guess its origin"
            )

        staged_size = self._runtime.file_size(volume, staging)
        if staged_size:
            self._runtime.move_file(volume, staging, live)
            logger.info("Database restored from replica (%d bytes)", staged_size)
            return BootstrapState.RESTORED_FROM_REPLICA

        if staged_size is not None:
            self._runtime.remove_file(volume, staging)
        self._runtime.touch_file(volume, live)
        logger.info("Empty database %s created", live)
        return BootstrapState.FRESHLY_CREATED
