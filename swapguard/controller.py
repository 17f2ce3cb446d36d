"""
Rollback Controller
~~~~~~~~~~~~~~~~~~~

Drives one deploy attempt end to end:

    begin → capture → back up → bootstrap → install → start → verify
                                                          ├─ pass → commit
                                                          └─ fail → rollback

Everything the attempt changes is recorded on an ``AttemptContext`` so
rollback knows exactly what to undo. A ``RollbackGuard`` wraps the
destructive part of the pipeline and guarantees rollback runs exactly
once, whether the verdict fails or a step raises.

Two replacement strategies are supported:

- ``blue_green``: the new unit is verified as a read-only candidate on a
  separate loopback port while the previous unit keeps serving. The
  public port is then routed to the candidate while the previous unit
  is parked and the promoted unit starts on the backend port, so a
  healthy backend answers on the public port throughout.
- ``recreate``: the previous unit is stopped (or checkpointed) and
  parked under another name, and the new unit takes its place.

The public port belongs to a forwarder unit (see
:mod:`swapguard.forwarder`); backends only publish private ports.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from types import TracebackType

from swapguard.bootstrap import DatabaseBootstrapper
from swapguard.config.schema import DeployConfig
from swapguard.core.models import (
    AttemptContext,
    BackupRecord,
    DeploymentAttempt,
    HealthProbeResult,
    Mount,
    PortBinding,
    UnitSpec,
)
from swapguard.core.status import AttemptStatus, Strategy, UnitRole
from swapguard.exceptions import (
    ConfigError,
    IncompleteRestoreError,
    ProcessLifecycleError,
    RollbackFailedError,
    RuntimeCommandError,
    SwapGuardError,
    VolumeOperationError,
)
from swapguard.forwarder import PortForwarder
from swapguard.health import HealthVerifier
from swapguard.replication import ReplicationAgent
from swapguard.runtime.base import ContainerRuntime
from swapguard.runtime.podman import PodmanRuntime
from swapguard.storage.ledger import AttemptLedger
from swapguard.storage.volumes import VolumeManager
from swapguard.supervisor import ProcessSupervisor

__all__ = ["RollbackController", "RollbackGuard"]

logger = logging.getLogger(__name__)


class RollbackGuard:
    """
    Scoped guard that rolls a deploy attempt back at most once.

    Armed on entry. Leaving the block with an exception, or calling
    ``trigger()``, runs the rollback callback. ``release()`` disarms the
    guard after a commit so leaving the block does nothing.
    """

    def __init__(self, rollback: Callable[[str], None]) -> None:
        self._rollback = rollback
        self._armed = False
        self._triggered = False

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def triggered(self) -> bool:
        return self._triggered

    def __enter__(self) -> RollbackGuard:
        self._armed = True
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if exc is not None and self._armed:
            self.trigger(f"{exc_type.__name__}: {exc}")
        self._armed = False
        return False

    def trigger(self, reason: str) -> None:
        """Run the rollback unless the guard was released or already fired."""
        if not self._armed or self._triggered:
            return
        self._triggered = True
        self._armed = False
        self._rollback(reason)

    def release(self) -> None:
        self._armed = False


class RollbackController:
    """
    Top-level driver for a deploy attempt.

    Args:
        config: Validated deployment configuration.
        runtime: Container runtime hosting units and volumes.
        ledger: Attempt ledger; also serializes concurrent deploys.
        verifier: Health verifier; built from ``config.health`` if omitted.

    Example::

        controller = RollbackController.from_config(load_config("swapguard.yaml"))
        attempt = controller.deploy("./target/release/deepsplit_be")
        sys.exit(attempt.status.exit_code())
    """

    def __init__(
        self,
        config: DeployConfig,
        runtime: ContainerRuntime,
        ledger: AttemptLedger,
        verifier: HealthVerifier | None = None,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._ledger = ledger
        self._verifier = verifier or HealthVerifier(config.health)
        self._volumes = VolumeManager(runtime, ledger, config.storage.archive_dir)
        self._supervisor = ProcessSupervisor(runtime)
        self._agent = ReplicationAgent(runtime, config.replication, config.storage)
        self._forwarder = PortForwarder(runtime, config.service, config.network)
        self._bootstrapper = DatabaseBootstrapper(runtime, self._agent, config.storage)
        self._context: AttemptContext | None = None

    @classmethod
    def from_config(
        cls,
        config: DeployConfig,
        verifier: HealthVerifier | None = None,
    ) -> RollbackController:
        """Build a controller backed by podman and the configured ledger."""
        return cls(
            config,
            PodmanRuntime.from_config(config),
            AttemptLedger(config.ledger.resolved_path()),
            verifier,
        )

    @property
    def context(self) -> AttemptContext | None:
        """State of the most recent attempt."""
        return self._context

    @property
    def ledger(self) -> AttemptLedger:
        return self._ledger

    # ── Public API ───────────────────────────────────────────────

    def deploy(self, artifact_path: str) -> DeploymentAttempt:
        """
        Deploy a new backend binary with automatic rollback.

        Returns:
            The attempt in its terminal status: ``committed``,
            ``rolled_back`` or ``failed_unrecoverable``.

        Raises:
            ConfigError: If the artifact does not exist.
            DeploymentInProgressError: If another attempt is pending.
        """
        if not os.path.isfile(artifact_path):
            raise ConfigError(f"Artifact not found: {artifact_path}")

        attempt = self._ledger.begin(self._config.service.name)
        ctx = AttemptContext(attempt=attempt)
        self._context = ctx
        logger.info(
            "Deploying %s to %s (attempt %s, strategy %s)",
            artifact_path,
            self._config.service.backend_unit,
            attempt.id,
            self._config.rollback.strategy.value,
        )

        try:
            self._run(ctx, artifact_path)
        except RollbackFailedError as exc:
            logger.critical("%s", exc)
            self._finish(ctx, AttemptStatus.FAILED_UNRECOVERABLE, exc.args[0])
        except IncompleteRestoreError as exc:
            logger.critical("%s", exc)
            self._finish(ctx, AttemptStatus.FAILED_UNRECOVERABLE, str(exc))
        except SwapGuardError as exc:
            self._finish(ctx, AttemptStatus.ROLLED_BACK, str(exc))
        except BaseException as exc:
            if not attempt.status.is_terminal():
                self._finish(
                    ctx,
                    AttemptStatus.ROLLED_BACK,
                    f"Interrupted by {type(exc).__name__}: {exc}",
                )
            raise
        return attempt

    # ── Pipeline ─────────────────────────────────────────────────

    def _run(self, ctx: AttemptContext, artifact_path: str) -> None:
        service = self._config.service

        ctx.previous_backend = self._supervisor.capture(service.backend_unit)
        ctx.previous_forwarder = self._supervisor.capture(self._forwarder.unit_name)
        if self._config.replication.enabled:
            ctx.previous_replicator = self._supervisor.capture(self._agent.unit_name)
        storage = self._config.storage
        for volume in (storage.data_volume, storage.binary_volume):
            self._volumes.check_restore_complete(volume)
        if self._supervisor.capture(service.parked_unit).exists:
            raise ProcessLifecycleError(
                f"Unit {service.parked_unit} is left over from an earlier attempt. "
                f"Inspect it and remove it before deploying again.",
                unit=service.parked_unit,
                operation="inspect",
            )
        self._supervisor.teardown(service.candidate_unit)

        with RollbackGuard(lambda reason: self._rollback(ctx, reason)) as guard:
            self._prepare_volumes(ctx)
            if self._config.rollback.strategy is Strategy.RECREATE:
                self._retire_previous(ctx)
            self._bootstrap(ctx)
            self._install_artifact(ctx, artifact_path)
            self._ensure_replicator(ctx)

            result = self._start_and_verify(ctx)
            if not result.passed:
                reason = _describe_failure(result)
                logger.error("New backend failed verification: %s", reason)
                guard.trigger(reason)
                self._finish(ctx, AttemptStatus.ROLLED_BACK, reason)
                return

            if self._config.replication.enabled:
                self._supervisor.ensure_running(self._agent.unit_name)
            guard.release()

        self._commit(ctx)

    def _prepare_volumes(self, ctx: AttemptContext) -> None:
        storage = self._config.storage
        volumes = (storage.data_volume, storage.binary_volume)
        for volume in volumes:
            self._volumes.create_volume(volume)
        self._volumes.create_volume(self._forwarder.routing_volume)

        first_deploy = not (
            ctx.has_previous_backend
            or self._ledger.has_committed(self._config.service.name)
        )
        for volume in volumes:
            record = self._volumes.backup_volume(
                volume, ctx.attempt.id, best_effort=first_deploy
            )
            if record is not None:
                ctx.backups.append(record)

    def _retire_previous(self, ctx: AttemptContext) -> None:
        """Stop or checkpoint the previous backend and move it aside."""
        if not ctx.has_previous_backend:
            return
        backend = self._config.service.backend_unit
        if self._config.rollback.use_checkpoints and ctx.previous_backend.running:
            ctx.checkpoint = self._volumes.checkpoint_unit(backend, ctx.attempt.id)
        else:
            self._supervisor.stop(backend)
        self._park_previous(ctx)

    def _park_previous(self, ctx: AttemptContext) -> None:
        service = self._config.service
        self._supervisor.rename(service.backend_unit, service.parked_unit)
        ctx.previous_parked = True

    def _bootstrap(self, ctx: AttemptContext) -> None:
        # Assume the data volume changed until bootstrap reports otherwise.
        ctx.data_touched = True
        state = self._bootstrapper.run()
        ctx.data_touched = state.changed_data()
        ctx.attempt.bootstrap_state = state
        self._ledger.save(ctx.attempt)

    def _install_artifact(self, ctx: AttemptContext, artifact_path: str) -> None:
        name = f"{self._config.service.binary_name}-{ctx.attempt.id}"
        volume = self._config.storage.binary_volume
        ctx.artifact_name = name
        try:
            self._runtime.copy_into_volume(artifact_path, volume, name)
        except RuntimeCommandError as exc:
            raise VolumeOperationError(
                f"Cannot install {artifact_path} into volume {volume}: {exc}"
            ) from exc
        logger.info("Installed artifact %s into volume %s", name, volume)

    def _ensure_replicator(self, ctx: AttemptContext) -> None:
        if not self._config.replication.enabled:
            return
        previous = ctx.previous_replicator
        if previous is not None and previous.exists:
            return
        self._supervisor.create(self._agent.unit_spec())
        ctx.replicator_created = True

    def _start_and_verify(self, ctx: AttemptContext) -> HealthProbeResult:
        previous = ctx.previous_backend
        if (
            self._config.rollback.strategy is Strategy.BLUE_GREEN
            and previous is not None
            and previous.running
        ):
            return self._start_blue_green(ctx)

        # Nothing is serving: the previous unit, if any, only needs its name freed.
        if ctx.has_previous_backend and not ctx.previous_parked:
            self._park_previous(ctx)
        network = self._config.network
        spec = self._backend_spec(
            ctx, self._config.service.backend_unit, network.backend_port
        )
        ctx.new_unit_id = self._supervisor.launch(spec)
        result = self._verify(network.backend_port)
        if not result.passed:
            return result
        self._publish(ctx, network.backend_port)
        return self._verify(network.host_port)

    def _start_blue_green(self, ctx: AttemptContext) -> HealthProbeResult:
        service = self._config.service
        network = self._config.network

        candidate = self._backend_spec(
            ctx, service.candidate_unit, network.candidate_port, read_only=True
        )
        ctx.candidate_unit_id = self._supervisor.launch(candidate)
        result = self._verify(network.candidate_port)
        if not result.passed:
            return result

        logger.info(
            "Candidate %s (%s) passed; promoting",
            service.candidate_unit,
            _short(ctx.candidate_unit_id),
        )
        # The candidate answers on the public port while the writer is replaced.
        if ctx.has_previous_forwarder:
            self._publish(ctx, network.candidate_port)
            self._supervisor.stop(service.backend_unit)
        else:
            logger.warning(
                "%s publishes port %d itself; the port is unserved until "
                "forwarder %s takes it over",
                service.backend_unit,
                network.host_port,
                self._forwarder.unit_name,
            )
            self._supervisor.stop(service.backend_unit)
            self._publish(ctx, network.candidate_port)
        self._park_previous(ctx)

        promoted = self._backend_spec(ctx, service.backend_unit, network.backend_port)
        ctx.new_unit_id = self._supervisor.launch(promoted)
        result = self._verify(network.backend_port)
        if not result.passed:
            return result
        self._publish(ctx, network.backend_port)
        result = self._verify(network.host_port)
        if result.passed:
            self._supervisor.teardown(service.candidate_unit)
        return result

    def _publish(self, ctx: AttemptContext, port: int) -> None:
        """Route the public port to ``port``, bringing up the forwarder."""
        self._forwarder.route_to(port)
        ctx.forwarder_rerouted = True
        if not (ctx.has_previous_forwarder or ctx.forwarder_created):
            self._supervisor.create(self._forwarder.unit_spec())
            ctx.forwarder_created = True
        self._supervisor.ensure_running(self._forwarder.unit_name)

    def _verify(self, port: int) -> HealthProbeResult:
        url = self._verifier.url_for(port, self._config.network.host_ip)
        return self._verifier.verify(url)

    def _backend_spec(
        self,
        ctx: AttemptContext,
        name: str,
        host_port: int,
        read_only: bool = False,
    ) -> UnitSpec:
        """
        Spec for a backend unit running this attempt's artifact.

        A ``read_only`` unit opens the database with ``mode=ro``. Its data
        mount stays writable because WAL readers need the shared-memory file.
        """
        storage = self._config.storage
        network = self._config.network
        database_url = f"sqlite:{storage.database_path}"
        if read_only:
            database_url += "?mode=ro"
        environment = {"DATABASE_URL": database_url}
        environment.update(self._config.environment.variables)

        env_file = None
        if self._config.environment.env_file:
            path = os.path.abspath(self._config.environment.env_file)
            if os.path.isfile(path):
                env_file = path
            else:
                logger.warning("Env file %s not found; starting without it", path)

        return UnitSpec(
            name=name,
            role=UnitRole.BACKEND,
            image=self._config.service.backend_image,
            command=[f"{storage.binary_mount}/{ctx.artifact_name}"],
            environment=environment,
            env_file=env_file,
            ports=[PortBinding(host_port, network.container_port, network.host_ip)],
            mounts=[
                Mount(storage.data_volume, storage.data_mount),
                Mount(
                    os.path.abspath(storage.config_dir),
                    storage.config_mount,
                    read_only=True,
                ),
                Mount(storage.binary_volume, storage.binary_mount, read_only=True),
            ],
        )

    # ── Commit ───────────────────────────────────────────────────

    def _commit(self, ctx: AttemptContext) -> None:
        """
        Make the new unit permanent.

        The verdict is already final here, so leftovers from cleanup are
        logged and left for the operator rather than failing the attempt.
        """
        cleanup_errors: list[str] = []
        if ctx.previous_parked:
            try:
                self._supervisor.teardown(self._config.service.parked_unit)
            except RuntimeCommandError as exc:
                cleanup_errors.append(str(exc))
        for record in self._records(ctx):
            try:
                self._volumes.discard(record)
            except (OSError, SwapGuardError) as exc:
                cleanup_errors.append(str(exc))

        for error in cleanup_errors:
            logger.warning("Cleanup after commit incomplete: %s", error)
        self._finish(
            ctx,
            AttemptStatus.COMMITTED,
            f"{self._config.service.backend_unit} now runs {ctx.artifact_name} "
            f"(unit {_short(ctx.new_unit_id)})",
        )

    # ── Rollback ─────────────────────────────────────────────────

    def _rollback(self, ctx: AttemptContext, reason: str) -> None:
        """
        Undo everything the attempt changed.

        Raises:
            RollbackFailedError: If any step fails. The attempt then needs
                manual recovery.
        """
        logger.warning("Rolling back attempt %s: %s", ctx.attempt.id, reason)
        stage = "start"
        try:
            stage = "remove new backend"
            self._remove_new_backend(ctx)

            if self._needs_volume_restore(ctx):
                stage = "restore volumes"
                self._restore_volumes(ctx)

            stage = "remove forwarder"
            self._restore_forwarder_unit(ctx)

            stage = "restore previous backend"
            self._restore_previous_backend(ctx)

            stage = "restore routing"
            self._restore_routing(ctx)

            stage = "remove candidate"
            if ctx.candidate_unit_id:
                logger.info("Removing candidate %s", _short(ctx.candidate_unit_id))
            self._supervisor.teardown(self._config.service.candidate_unit)

            stage = "restore replication agent"
            self._restore_replicator(ctx)

            stage = "discard artifacts"
            self._discard_attempt_files(ctx)
        except Exception as exc:
            raise RollbackFailedError(
                f"Rollback of attempt {ctx.attempt.id} failed: {exc}",
                attempt_id=ctx.attempt.id,
                stage=stage,
                details={"reason": reason},
            ) from exc
        logger.info("Rolled back attempt %s", ctx.attempt.id)

    def _remove_new_backend(self, ctx: AttemptContext) -> None:
        # The backend name belongs to this attempt only once the previous
        # unit has been parked, or when there was no previous unit.
        if ctx.previous_parked or not ctx.has_previous_backend:
            if ctx.new_unit_id:
                logger.info("Removing new backend %s", _short(ctx.new_unit_id))
            self._supervisor.teardown(self._config.service.backend_unit)

    def _needs_volume_restore(self, ctx: AttemptContext) -> bool:
        if ctx.data_touched:
            return True
        return (
            self._config.rollback.strategy is Strategy.RECREATE
            and ctx.artifact_name is not None
        )

    def _restore_volumes(self, ctx: AttemptContext) -> None:
        """Restore the data and binary volumes together, or neither."""
        storage = self._config.storage
        data = ctx.backup_for(storage.data_volume)
        binary = ctx.backup_for(storage.binary_volume)
        if data is None or binary is None:
            if ctx.has_previous_backend:
                raise VolumeOperationError(
                    "Backups of both volumes are required to restore them together"
                )
            logger.warning("No complete backup set on first deploy; volumes kept")
            return

        # No writer may hold the database while it is replaced.
        self._supervisor.teardown(self._config.service.candidate_unit)
        if self._config.replication.enabled:
            self._supervisor.stop(self._agent.unit_name)
        if ctx.has_previous_backend and not ctx.previous_parked:
            self._supervisor.stop(self._config.service.backend_unit)

        self._volumes.restore_volume(storage.data_volume, data)
        self._volumes.restore_volume(storage.binary_volume, binary)
        ctx.volumes_restored = True

    def _restore_previous_backend(self, ctx: AttemptContext) -> None:
        if not ctx.has_previous_backend:
            return
        previous = ctx.previous_backend
        service = self._config.service

        if ctx.previous_parked:
            restored = False
            if ctx.checkpoint is not None:
                try:
                    self._volumes.restore_checkpoint(
                        ctx.checkpoint, name=service.backend_unit
                    )
                    self._supervisor.teardown(service.parked_unit)
                    restored = True
                except VolumeOperationError as exc:
                    logger.warning(
                        "Checkpoint restore failed; restarting %s instead: %s",
                        previous.id,
                        exc,
                    )
                    self._supervisor.teardown(service.backend_unit)
            if not restored:
                self._supervisor.rename(previous.id, service.backend_unit)
                if previous.running:
                    self._supervisor.start(service.backend_unit)
            ctx.previous_parked = False
        elif previous.running:
            self._supervisor.ensure_running(service.backend_unit)

        if previous.running and not self._supervisor.is_running(service.backend_unit):
            raise ProcessLifecycleError(
                f"Previous backend {service.backend_unit} did not come back up",
                unit=service.backend_unit,
                operation="start",
            )

    def _restore_forwarder_unit(self, ctx: AttemptContext) -> None:
        # Frees the public port for a previous unit that published it itself.
        if ctx.forwarder_created:
            self._supervisor.teardown(self._forwarder.unit_name)
            ctx.forwarder_created = False

    def _restore_routing(self, ctx: AttemptContext) -> None:
        if not (ctx.forwarder_rerouted and ctx.has_previous_forwarder):
            return
        self._forwarder.route_to(self._config.network.backend_port)
        if ctx.previous_forwarder.running:
            self._supervisor.ensure_running(self._forwarder.unit_name)
        else:
            self._supervisor.stop(self._forwarder.unit_name)
        ctx.forwarder_rerouted = False

    def _restore_replicator(self, ctx: AttemptContext) -> None:
        if not self._config.replication.enabled:
            return
        if ctx.replicator_created:
            self._supervisor.teardown(self._agent.unit_name)
            return
        previous = ctx.previous_replicator
        if previous is not None and previous.running:
            self._supervisor.ensure_running(self._agent.unit_name)

    def _discard_attempt_files(self, ctx: AttemptContext) -> None:
        if ctx.artifact_name and not ctx.volumes_restored:
            try:
                self._runtime.remove_file(
                    self._config.storage.binary_volume, ctx.artifact_name
                )
            except RuntimeCommandError as exc:
                logger.warning(
                    "Could not remove artifact %s: %s", ctx.artifact_name, exc
                )
        for record in self._records(ctx):
            self._volumes.discard(record)

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _records(ctx: AttemptContext) -> list[BackupRecord]:
        records = list(ctx.backups)
        if ctx.checkpoint is not None:
            records.append(ctx.checkpoint)
        return records

    def _finish(
        self, ctx: AttemptContext, status: AttemptStatus, message: str
    ) -> None:
        self._ledger.finish(ctx.attempt, status, message)
        if status is AttemptStatus.COMMITTED:
            logger.info("Attempt %s committed: %s", ctx.attempt.id, message)
        elif status is AttemptStatus.ROLLED_BACK:
            logger.error("Attempt %s rolled back: %s", ctx.attempt.id, message)
        else:
            logger.critical(
                "Attempt %s failed unrecoverably; human intervention required",
                ctx.attempt.id,
            )


def _short(unit_id: str | None) -> str:
    return unit_id[:12] if unit_id else "unknown"


def _describe_failure(result: HealthProbeResult) -> str:
    prefix = f"health check failed after {result.attempts} attempts"
    if result.error:
        return f"{prefix}: {result.error}"
    body = result.raw_response[:200]
    return f"{prefix} (HTTP {result.status_code}): {body!r}"
