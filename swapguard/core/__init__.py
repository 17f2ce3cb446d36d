"""swapguard core data models and status enums."""

from swapguard.core.models import (
    AttemptContext,
    BackupRecord,
    DeploymentAttempt,
    HealthProbeResult,
    Mount,
    PortBinding,
    UnitSnapshot,
    UnitSpec,
)
from swapguard.core.status import (
    AttemptStatus,
    BootstrapState,
    RecordKind,
    RestoreOutcome,
    Strategy,
    UnitRole,
    UnitState,
)

__all__ = [
    "AttemptContext",
    "AttemptStatus",
    "BackupRecord",
    "BootstrapState",
    "DeploymentAttempt",
    "HealthProbeResult",
    "Mount",
    "PortBinding",
    "RecordKind",
    "RestoreOutcome",
    "Strategy",
    "UnitRole",
    "UnitSnapshot",
    "UnitSpec",
    "UnitState",
]
