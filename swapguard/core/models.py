"""
swapguard Data Models
~~~~~~~~~~~~~~~~~~~~~

Defines the dataclasses that flow through a deploy attempt:
DeploymentAttempt (the ledger row), BackupRecord (an archive that can
undo a destructive step), UnitSpec (how to create a service unit), and
AttemptContext (the per-attempt state passed down the pipeline).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from swapguard.core.status import (
    AttemptStatus,
    BootstrapState,
    RecordKind,
    UnitRole,
    UnitState,
)

__all__ = [
    "DeploymentAttempt",
    "BackupRecord",
    "PortBinding",
    "Mount",
    "UnitSpec",
    "UnitSnapshot",
    "HealthProbeResult",
    "AttemptContext",
]


def _new_attempt_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class DeploymentAttempt:
    """
    One run of the orchestrator against a service.

    Attributes:
        service: Name of the service being deployed.
        id: Short unique identifier, also used in archive and unit names.
        started_at: When the attempt was created.
        status: Current lifecycle status.
        finished_at: When the attempt reached a terminal status.
        bootstrap_state: Outcome of database bootstrap, once known.
        message: Human-readable reason for the terminal status.
    """

    service: str
    id: str = field(default_factory=_new_attempt_id)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: AttemptStatus = AttemptStatus.PENDING
    finished_at: datetime | None = None
    bootstrap_state: BootstrapState = BootstrapState.UNKNOWN
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "id": self.id,
            "service": self.service,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "bootstrap_state": self.bootstrap_state.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class BackupRecord:
    """
    A completed archive of a volume or a checkpointed unit.

    Only ever constructed after the archive file is fully written.
    """

    attempt_id: str
    kind: RecordKind
    source: str
    archive: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class PortBinding:
    """Host → container port mapping, loopback only by default."""

    host_port: int
    container_port: int
    host_ip: str = "127.0.0.1"

    def to_arg(self) -> str:
        return f"{self.host_ip}:{self.host_port}:{self.container_port}"


@dataclass(frozen=True)
class Mount:
    """A named volume or host path mounted into a unit."""

    source: str
    target: str
    read_only: bool = False

    def to_arg(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


@dataclass
class UnitSpec:
    """
    Everything needed to create a service unit.

    Attributes:
        name: Unit (container) name.
        role: Backend, replication agent or port forwarder.
        image: Image reference.
        command: Command and arguments run inside the unit.
        environment: Extra environment bindings.
        env_file: Optional host path of an env file.
        ports: Published port bindings.
        mounts: Volume and bind mounts.
        host_network: Share the host network namespace instead of
            publishing ports.
    """

    name: str
    role: UnitRole
    image: str
    command: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    env_file: str | None = None
    ports: list[PortBinding] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)
    host_network: bool = False


@dataclass(frozen=True)
class UnitSnapshot:
    """Identity and state of a unit captured before any teardown."""

    name: str
    id: str | None
    state: UnitState

    @property
    def exists(self) -> bool:
        return self.id is not None and self.state is not UnitState.ABSENT

    @property
    def running(self) -> bool:
        return self.state is UnitState.RUNNING


@dataclass
class HealthProbeResult:
    """
    Verdict of the health verifier.

    Attributes:
        passed: Whether the unit served the expected reference data.
        raw_response: Body of the last response received, if any.
        status_code: HTTP status of the last response, if any.
        error: Transport error of the last request, if any.
        attempts: Number of probe requests issued.
    """

    passed: bool
    raw_response: str = ""
    status_code: int | None = None
    error: str | None = None
    attempts: int = 0


@dataclass
class AttemptContext:
    """
    Per-attempt state passed explicitly through the pipeline.

    Identities of the previous units are recorded here before anything
    is stopped, since a removed unit's id cannot be recovered.
    """

    attempt: DeploymentAttempt
    previous_backend: UnitSnapshot | None = None
    previous_replicator: UnitSnapshot | None = None
    previous_forwarder: UnitSnapshot | None = None
    candidate_unit_id: str | None = None
    new_unit_id: str | None = None
    artifact_name: str | None = None
    backups: list[BackupRecord] = field(default_factory=list)
    checkpoint: BackupRecord | None = None
    previous_parked: bool = False
    data_touched: bool = False
    replicator_created: bool = False
    forwarder_created: bool = False
    forwarder_rerouted: bool = False
    volumes_restored: bool = False

    @property
    def has_previous_backend(self) -> bool:
        return self.previous_backend is not None and self.previous_backend.exists

    @property
    def has_previous_forwarder(self) -> bool:
        return self.previous_forwarder is not None and self.previous_forwarder.exists

    def backup_for(self, volume: str) -> BackupRecord | None:
        """Return the volume backup taken for ``volume`` in this attempt."""
        for record in self.backups:
            if record.kind is RecordKind.VOLUME and record.source == volume:
                return record
        return None
