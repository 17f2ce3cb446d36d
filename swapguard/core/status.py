"""
swapguard Status Enums
~~~~~~~~~~~~~~~~~~~~~~

Core enums describing the lifecycle of a deploy attempt, the outcome
of database bootstrap, and the state of managed service units.
"""

from enum import StrEnum

__all__ = [
    "AttemptStatus",
    "BootstrapState",
    "UnitRole",
    "UnitState",
    "RecordKind",
    "RestoreOutcome",
    "Strategy",
]


class AttemptStatus(StrEnum):
    """
    Status of a deployment attempt.

    - PENDING: The attempt is in flight; no other attempt may start.
    - COMMITTED: The new unit passed its health check and was promoted.
    - ROLLED_BACK: The previous state was restored after a failure.
    - FAILED_UNRECOVERABLE: Rollback itself failed; an operator must act.
    """

    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED_UNRECOVERABLE = "failed_unrecoverable"

    def is_terminal(self) -> bool:
        """Return True once the attempt can no longer change."""
        return self is not AttemptStatus.PENDING

    def exit_code(self) -> int:
        """Return the process exit code for this status."""
        return 0 if self is AttemptStatus.COMMITTED else 1


class BootstrapState(StrEnum):
    """Where the live database came from for this attempt."""

    UNKNOWN = "unknown"
    LOCAL_EXISTS = "local_exists"
    RESTORED_FROM_REPLICA = "restored_from_replica"
    FRESHLY_CREATED = "freshly_created"

    def changed_data(self) -> bool:
        """Return True if bootstrap wrote to the data volume."""
        return self in (
            BootstrapState.RESTORED_FROM_REPLICA,
            BootstrapState.FRESHLY_CREATED,
        )


class UnitRole(StrEnum):
    """Role of a managed service unit."""

    BACKEND = "backend"
    REPLICATION_AGENT = "replication-agent"
    FORWARDER = "forwarder"


class UnitState(StrEnum):
    """Observed state of a service unit."""

    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    CHECKPOINTED = "checkpointed"
    STOPPED = "stopped"


class RecordKind(StrEnum):
    """Kind of archive a backup record points at."""

    VOLUME = "volume"
    CHECKPOINT = "checkpoint"


class RestoreOutcome(StrEnum):
    """Result of a synchronous replica restore run."""

    COMPLETED = "completed"
    FAILED = "failed"


class Strategy(StrEnum):
    """
    Replacement strategy for the backend unit.

    - BLUE_GREEN: Verify a candidate beside the serving unit; the old unit
      is destroyed only after the replacement passed its health check.
    - RECREATE: Stop the serving unit first, restore it on failure.
    """

    BLUE_GREEN = "blue_green"
    RECREATE = "recreate"
