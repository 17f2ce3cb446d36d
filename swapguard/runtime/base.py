"""
Container Runtime Interface
~~~~~~~~~~~~~~~~~~~~~~~~~~~

Abstract base class for the container runtime that hosts service units
and named volumes. Everything else in swapguard talks to the runtime
only through this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from swapguard.core.models import Mount, UnitSpec
from swapguard.core.status import UnitState

__all__ = ["ContainerRuntime", "OneshotResult", "RESTORE_MARKER"]

#: Present in a volume while its contents are being replaced.
RESTORE_MARKER = ".swapguard-restore-in-progress"


@dataclass(frozen=True)
class OneshotResult:
    """Exit status and output of a run-to-completion helper unit."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ContainerRuntime(ABC):
    """
    Abstract container runtime.

    Contract shared by all implementations:

    - Operations on a missing unit raise ``UnitNotFoundError``.
    - Operations on a missing volume raise ``VolumeNotFoundError``.
    - Any other failure raises ``RuntimeCommandError``.
    - ``run_oneshot`` blocks until the helper unit has exited.

    Idempotency is decided by the callers (volume manager, supervisor),
    not here.
    """

    # ── Volumes ──────────────────────────────────────────────────

    @abstractmethod
    def volume_exists(self, name: str) -> bool: ...

    @abstractmethod
    def create_volume(self, name: str) -> None:
        """Create a volume; creating an existing volume is not an error."""
        ...

    @abstractmethod
    def remove_volume(self, name: str) -> None: ...

    @abstractmethod
    def export_volume(self, name: str, archive_path: str) -> None:
        """Write the volume contents to a tar archive on the host."""
        ...

    @abstractmethod
    def import_volume(self, name: str, archive_path: str) -> None:
        """Unpack a tar archive into an existing volume."""
        ...

    @abstractmethod
    def swap_volume_contents(self, staging: str, live: str) -> None:
        """
        Replace the contents of ``live`` with those of ``staging``.

        Writes ``RESTORE_MARKER`` into ``live`` before touching anything
        and removes it only after the last entry is in place. A volume
        that still holds the marker was interrupted mid-swap and must
        not be used. Each top-level entry is moved into place with a
        rename, and entries of ``live`` absent from ``staging`` are
        removed, including stale SQLite journal files.
        """
        ...

    # ── Files inside volumes ─────────────────────────────────────

    @abstractmethod
    def file_size(self, volume: str, path: str) -> int | None:
        """Return the size of a file in a volume, or None if absent."""
        ...

    @abstractmethod
    def move_file(self, volume: str, src: str, dst: str) -> None: ...

    @abstractmethod
    def remove_file(self, volume: str, path: str) -> None: ...

    @abstractmethod
    def touch_file(self, volume: str, path: str) -> None: ...

    @abstractmethod
    def copy_into_volume(self, host_path: str, volume: str, dest: str) -> None:
        """Copy a host file into a volume and mark it executable."""
        ...

    # ── Units ────────────────────────────────────────────────────

    @abstractmethod
    def unit_id(self, name: str) -> str | None:
        """Return the unit id, or None when no such unit exists."""
        ...

    @abstractmethod
    def unit_state(self, name: str) -> UnitState: ...

    @abstractmethod
    def create_unit(self, spec: UnitSpec) -> str:
        """Create (but do not start) a unit and return its id."""
        ...

    @abstractmethod
    def start_unit(self, name: str) -> None: ...

    @abstractmethod
    def stop_unit(self, name: str) -> None: ...

    @abstractmethod
    def remove_unit(self, name: str) -> None: ...

    @abstractmethod
    def rename_unit(self, name: str, new_name: str) -> None: ...

    @abstractmethod
    def checkpoint_unit(self, name: str, archive_path: str) -> None:
        """Checkpoint a running unit to an archive, leaving it stopped."""
        ...

    @abstractmethod
    def restore_checkpoint(self, archive_path: str, name: str) -> str:
        """Restore a unit from a checkpoint archive and return its id."""
        ...

    @abstractmethod
    def run_oneshot(
        self,
        image: str,
        args: list[str],
        mounts: list[Mount] | None = None,
    ) -> OneshotResult:
        """Run a helper unit to completion and return its exit status."""
        ...
