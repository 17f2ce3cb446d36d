"""
swapguard: safe in-place redeploys for a single-host backend.

swapguard replaces a containerized backend binary that runs against a
Litestream-replicated SQLite database, and undoes the replacement if the
new binary does not serve its reference data:

- Serialized deploy attempts recorded in a local SQLite ledger
- Volume backups taken before anything destructive happens
- Database bootstrap from the replica when no local copy exists
- Blue/green verification on a loopback candidate port
- Automatic, exactly-once rollback with checkpoint support

Quick Start::

    from swapguard import RollbackController, load_config

    controller = RollbackController.from_config(load_config("swapguard.yaml"))
    attempt = controller.deploy("./target/release/deepsplit_be")
    print(attempt.status)
"""

from swapguard.config import DeployConfig, load_config, load_config_from_dict
from swapguard.controller import RollbackController, RollbackGuard
from swapguard.core.models import (
    AttemptContext,
    BackupRecord,
    DeploymentAttempt,
    HealthProbeResult,
    UnitSnapshot,
    UnitSpec,
)
from swapguard.core.status import AttemptStatus, BootstrapState, Strategy
from swapguard.exceptions import SwapGuardError
from swapguard.health import HealthVerifier
from swapguard.runtime import ContainerRuntime, PodmanRuntime

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "RollbackController",
    "RollbackGuard",
    "HealthVerifier",
    # Configuration
    "DeployConfig",
    "load_config",
    "load_config_from_dict",
    # Enums
    "AttemptStatus",
    "BootstrapState",
    "Strategy",
    # Data models
    "AttemptContext",
    "BackupRecord",
    "DeploymentAttempt",
    "HealthProbeResult",
    "UnitSnapshot",
    "UnitSpec",
    # Runtimes
    "ContainerRuntime",
    "PodmanRuntime",
    # Errors
    "SwapGuardError",
    # Version
    "__version__",
]
