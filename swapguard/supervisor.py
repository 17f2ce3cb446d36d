"""
Process Supervisor
~~~~~~~~~~~~~~~~~~

Stop, remove, create and start service units.

Teardown is idempotent: stopping or removing a unit that does not exist
is success, so repeated runs converge on the same end state. Creating
or starting a unit either succeeds or raises ProcessLifecycleError.
Readiness is never judged here; that is the health verifier's job.
"""

from __future__ import annotations

import logging

from swapguard.core.models import UnitSnapshot, UnitSpec
from swapguard.core.status import UnitState
from swapguard.exceptions import (
    ProcessLifecycleError,
    RuntimeCommandError,
    UnitNotFoundError,
)
from swapguard.runtime.base import ContainerRuntime

__all__ = ["ProcessSupervisor"]

logger = logging.getLogger(__name__)


class ProcessSupervisor:
    """Lifecycle operations for service units."""

    def __init__(self, runtime: ContainerRuntime) -> None:
        self._runtime = runtime

    def capture(self, name: str) -> UnitSnapshot:
        """Record a unit's identity and state before touching it."""
        try:
            unit_id = self._runtime.unit_id(name)
            state = self._runtime.unit_state(name) if unit_id else UnitState.ABSENT
        except RuntimeCommandError as exc:
            raise ProcessLifecycleError(
                f"Cannot inspect unit {name}: {exc}", unit=name, operation="inspect"
            ) from exc
        snapshot = UnitSnapshot(name=name, id=unit_id, state=state)
        logger.debug("Captured unit %s: id=%s state=%s", name, unit_id, state.value)
        return snapshot

    def state(self, name: str) -> UnitState:
        return self._runtime.unit_state(name)

    def is_running(self, name: str) -> bool:
        return self._runtime.unit_state(name) is UnitState.RUNNING

    # ── Teardown (idempotent) ────────────────────────────────────

    def stop(self, name: str) -> bool:
        """
        Stop a unit.

        Returns:
            True if a unit was stopped, False if there was none.
        """
        try:
            self._runtime.stop_unit(name)
        except UnitNotFoundError:
            logger.debug("Unit %s not found; nothing to stop", name)
            return False
        logger.info("Stopped unit %s", name)
        return True

    def remove(self, name: str) -> bool:
        """
        Remove a unit.

        Returns:
            True if a unit was removed, False if there was none.
        """
        try:
            self._runtime.remove_unit(name)
        except UnitNotFoundError:
            logger.debug("Unit %s not found; nothing to remove", name)
            return False
        logger.info("Removed unit %s", name)
        return True

    def teardown(self, name: str) -> None:
        """Stop and remove a unit, whatever state it is in."""
        self.stop(name)
        self.remove(name)

    # ── Bring-up ─────────────────────────────────────────────────

    def create(self, spec: UnitSpec) -> str:
        """Create a unit from its spec and return the new id."""
        try:
            unit_id = self._runtime.create_unit(spec)
        except RuntimeCommandError as exc:
            raise ProcessLifecycleError(
                f"Cannot create unit {spec.name}: {exc}",
                unit=spec.name,
                operation="create",
            ) from exc
        logger.info("Created %s unit %s (%s)", spec.role.value, spec.name, unit_id)
        return unit_id

    def start(self, name: str) -> None:
        try:
            self._runtime.start_unit(name)
        except RuntimeCommandError as exc:
            raise ProcessLifecycleError(
                f"Cannot start unit {name}: {exc}", unit=name, operation="start"
            ) from exc
        logger.info("Started unit %s", name)

    def launch(self, spec: UnitSpec) -> str:
        """Create and start a unit."""
        unit_id = self.create(spec)
        self.start(spec.name)
        return unit_id

    def ensure_running(self, name: str) -> None:
        """Start a unit unless it is already running."""
        if self.is_running(name):
            logger.debug("Unit %s already running", name)
            return
        self.start(name)

    def rename(self, name: str, new_name: str) -> None:
        try:
            self._runtime.rename_unit(name, new_name)
        except RuntimeCommandError as exc:
            raise ProcessLifecycleError(
                f"Cannot rename unit {name} to {new_name}: {exc}",
                unit=name,
                operation="rename",
            ) from exc
        logger.info("Renamed unit %s to %s", name, new_name)
