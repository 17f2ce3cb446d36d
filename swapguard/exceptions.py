"""
swapguard Custom Exceptions
~~~~~~~~~~~~~~~~~~~~~~~~~~~

All custom exception classes for swapguard, organized by domain.
Every distinct failure mode of a deploy attempt has its own type.

A failed health probe is deliberately *not* an exception: it is an
ordinary :class:`~swapguard.core.models.HealthProbeResult` that routes
the attempt to rollback.

**Structured Error Messages**

:class:`RollbackFailedError` provides three structured fields, because it
is the one error an operator must act on by hand:

- ``what_happened``: Clear plain-English description
- ``stage``: The rollback step that failed
- ``how_to_fix``: Concrete, actionable steps
"""

__all__ = [
    # Base
    "SwapGuardError",
    # Config
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigValidationError",
    # Runtime
    "RuntimeCommandError",
    "UnitNotFoundError",
    "VolumeNotFoundError",
    # Storage
    "VolumeOperationError",
    "BackupVerificationError",
    "IncompleteRestoreError",
    "LedgerError",
    "DeploymentInProgressError",
    # Bootstrap
    "RestoreAmbiguityError",
    # Process
    "ProcessLifecycleError",
    # Rollback
    "RollbackError",
    "RollbackFailedError",
]


# ── Formatting Helper ────────────────────────────────────────────────────────

_SEPARATOR = "─" * 52


def _format_structured_error(
    title: str,
    what_happened: str,
    stage: str,
    how_to_fix: str,
) -> str:
    """Build a rich, structured error message."""
    lines = [
        f"  {title}",
        f"  {_SEPARATOR}",
        "  What happened:",
        *[f"    {line}" for line in what_happened.strip().splitlines()],
        "",
        "  Failed stage:",
        f"    {stage}",
        "",
        "  How to fix:",
        *[f"    {line}" for line in how_to_fix.strip().splitlines()],
    ]
    return "\n".join(lines)


# ── Base Exception ───────────────────────────────────────────────────────────


class SwapGuardError(Exception):
    """Base exception for all swapguard errors."""

    def __init__(self, message: str = "", details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Config Exceptions ────────────────────────────────────────────────────────


class ConfigError(SwapGuardError):
    """Base exception for configuration-related errors."""


class ConfigFileNotFoundError(ConfigError):
    """Raised when a configuration file cannot be found at the specified path."""


class ConfigValidationError(ConfigError):
    """Raised when configuration values fail validation."""


# ── Runtime Exceptions ───────────────────────────────────────────────────────


class RuntimeCommandError(SwapGuardError):
    """
    Raised when a container runtime command exits non-zero or times out.

    The failing command, its return code and stderr are kept so the
    caller can log them verbatim.
    """

    def __init__(
        self,
        message: str = "Runtime command failed",
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        details: dict | None = None,
    ) -> None:
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message, details)


class UnitNotFoundError(RuntimeCommandError):
    """Raised when a service unit (container) does not exist."""


class VolumeNotFoundError(RuntimeCommandError):
    """Raised when a named volume does not exist."""


# ── Storage Exceptions ───────────────────────────────────────────────────────


class VolumeOperationError(SwapGuardError):
    """Raised when a volume create, backup or restore fails."""


class BackupVerificationError(VolumeOperationError):
    """Raised when a backup record is missing or its archive is incomplete."""


class IncompleteRestoreError(VolumeOperationError):
    """
    Raised when a volume still carries the marker of an interrupted restore.

    Its contents are a mix of the backup and whatever was there before, so
    nothing may read, back up or replace them until an operator has
    restored the volume by hand and removed the marker.
    """

    def __init__(self, volume: str, marker: str) -> None:
        self.volume = volume
        self.marker = marker
        super().__init__(
            f"Volume {volume} was left half-restored by an interrupted restore. "
            f"Restore it from a backup archive by hand, then delete {marker} "
            f"from the volume.",
            details={"volume": volume, "marker": marker},
        )


class LedgerError(SwapGuardError):
    """Raised when the attempt ledger cannot be read or written."""


class DeploymentInProgressError(LedgerError):
    """Raised when another deploy attempt for the same service is pending."""

    def __init__(
        self,
        message: str = "Deployment already in progress",
        service: str = "",
        attempt_id: str = "",
        details: dict | None = None,
    ) -> None:
        self.service = service
        self.attempt_id = attempt_id
        super().__init__(message, details)


# ── Bootstrap Exceptions ─────────────────────────────────────────────────────


class RestoreAmbiguityError(SwapGuardError):
    """
    Raised when the origin of the live database cannot be determined.

    The bootstrapper only restores when the live file is absent; if the
    live file shows up while the replica restore was running, it is
    impossible to tell whether it came from the replica or from another
    writer. The attempt stops instead of guessing.
    """


# ── Process Exceptions ───────────────────────────────────────────────────────


class ProcessLifecycleError(SwapGuardError):
    """Raised when a service unit cannot be created or started."""

    def __init__(
        self,
        message: str = "Unit lifecycle operation failed",
        unit: str = "",
        operation: str = "",
        details: dict | None = None,
    ) -> None:
        self.unit = unit
        self.operation = operation
        super().__init__(message, details)


# ── Rollback Exceptions ──────────────────────────────────────────────────────


class RollbackError(SwapGuardError):
    """Base exception for rollback errors."""


class RollbackFailedError(RollbackError):
    """
    Raised when restoring backups or restarting previous units fails.

    Automated recovery is exhausted at this point; the message is
    formatted so it stands out in the deploy log.

    Structured fields:
    - ``what_happened``: description of the failed recovery
    - ``stage``: the rollback step that failed
    - ``how_to_fix``: manual recovery steps
    """

    def __init__(
        self,
        message: str = "Rollback failed",
        attempt_id: str = "",
        stage: str = "",
        details: dict | None = None,
        what_happened: str = "",
        how_to_fix: str = "",
    ) -> None:
        self.attempt_id = attempt_id
        self.stage = stage
        self.what_happened = what_happened or (
            f"Deploy attempt {attempt_id} failed and automatic rollback "
            f"could not complete. HUMAN INTERVENTION REQUIRED."
        )
        self.how_to_fix = how_to_fix or (
            "1. Inspect running units with `podman ps -a`\n"
            "2. Restore the volumes from the archives listed by\n"
            f"   `swapguard status --attempt {attempt_id}`\n"
            "3. Start the previous backend unit and verify it answers\n"
            "   `swapguard probe`"
        )
        super().__init__(message, details)

    def __str__(self) -> str:
        return _format_structured_error(
            title=f"RollbackFailedError: {self.args[0]}",
            what_happened=self.what_happened,
            stage=self.stage or "(unknown)",
            how_to_fix=self.how_to_fix,
        )
