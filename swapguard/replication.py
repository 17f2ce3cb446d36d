"""
Replication Agent Client
~~~~~~~~~~~~~~~~~~~~~~~~

Thin client for the Litestream replication agent. Two operations are
used: a one-shot ``restore`` that runs to completion before returning,
and the long-lived ``replicate`` unit that ships the WAL to durable
storage.
"""

from __future__ import annotations

import logging
import os

from swapguard.config.schema import ReplicationConfig, StorageConfig
from swapguard.core.models import Mount, UnitSpec
from swapguard.core.status import RestoreOutcome, UnitRole
from swapguard.exceptions import RestoreAmbiguityError, RuntimeCommandError
from swapguard.runtime.base import ContainerRuntime

__all__ = ["ReplicationAgent"]

logger = logging.getLogger(__name__)


class ReplicationAgent:
    """
    Runs Litestream through the container runtime.

    Args:
        runtime: Container runtime used to run the agent.
        replication: Agent image, unit name and config location.
        storage: Volume layout shared with the backend.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        replication: ReplicationConfig,
        storage: StorageConfig,
    ) -> None:
        self._runtime = runtime
        self._replication = replication
        self._storage = storage

    @property
    def unit_name(self) -> str:
        return self._replication.unit

    def _mounts(self) -> list[Mount]:
        return [
            Mount(self._storage.data_volume, self._storage.data_mount),
            Mount(
                os.path.abspath(self._storage.config_dir),
                self._storage.config_mount,
                read_only=True,
            ),
        ]

    def restore(
        self,
        target_path: str,
        config_path: str | None = None,
        require_replica_exists: bool = True,
    ) -> RestoreOutcome:
        """
        Restore the latest replica snapshot to ``target_path``.

        Blocks until the agent process has exited. With
        ``require_replica_exists`` the agent treats a missing replica as
        success and writes nothing.

        Returns:
            COMPLETED when the agent exited cleanly, FAILED otherwise.

        Raises:
            RestoreAmbiguityError: If the agent did not finish within the
                runtime timeout, so it may still be writing the target.
        """
        args = [
            "restore",
            "-o",
            target_path,
            "-config",
            config_path or self._replication.config_path,
        ]
        if require_replica_exists:
            args.append("-if-replica-exists")
        args.append(self._storage.database_path)

        logger.info(
            "Restoring replica of %s into %s",
            self._storage.database_path,
            target_path,
        )
        try:
            result = self._runtime.run_oneshot(
                self._replication.image, args, self._mounts()
            )
        except RuntimeCommandError as exc:
            raise RestoreAmbiguityError(
                f"Replica restore did not complete: {exc}. "
                f"{target_path} may still be written to."
            ) from exc

        if not result.ok:
            logger.warning(
                "Replica restore exited %d: %s",
                result.returncode,
                result.stderr.strip(),
            )
            return RestoreOutcome.FAILED
        return RestoreOutcome.COMPLETED

    def unit_spec(self) -> UnitSpec:
        """Spec for the long-lived ``replicate`` unit."""
        return UnitSpec(
            name=self._replication.unit,
            role=UnitRole.REPLICATION_AGENT,
            image=self._replication.image,
            command=["replicate", "-config", self._replication.config_path],
            mounts=self._mounts(),
        )
