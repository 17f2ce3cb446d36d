"""Shared fixtures for swapguard tests."""

from __future__ import annotations

import json
import os
import shutil
import tarfile
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import pytest

from swapguard.config import DeployConfig, load_config_from_dict
from swapguard.controller import RollbackController
from swapguard.core.models import Mount, PortBinding, UnitSpec
from swapguard.core.status import UnitRole, UnitState
from swapguard.exceptions import (
    RuntimeCommandError,
    UnitNotFoundError,
    VolumeNotFoundError,
)
from swapguard.forwarder import ROUTING_MOUNT, UPSTREAM_FILE, PortForwarder
from swapguard.health import HealthVerifier
from swapguard.runtime.base import RESTORE_MARKER, ContainerRuntime, OneshotResult
from swapguard.storage.ledger import AttemptLedger

HEALTHY = "healthy"
EMPTY = "empty"
CRASH = "crash"
ERROR = "error"

PUBLIC_PORT = 33371

CURRENCIES = [{"displayName": "Euro"}, {"displayName": "US Dollar"}]


# ── Fake runtime ─────────────────────────────────────────────────


@dataclass
class FakeUnit:
    id: str
    spec: UnitSpec
    state: UnitState = UnitState.CREATED


@dataclass
class FakeReplica:
    """What the fake replication agent finds in durable storage."""

    content: bytes | None = None
    returncode: int = 0
    writes_live: bool = False


class FakeRuntime(ContainerRuntime):
    """
    In-memory container runtime.

    Volumes are directories under ``root``; units live in a dict. A
    backend unit's behavior is the content of the artifact it runs:
    ``crash`` exits right after start, ``empty`` serves no currencies,
    ``error`` answers HTTP 500, anything else is healthy.

    After every change to units or volumes the runtime notes which
    backend answers on the public port and which backends hold the
    database writable, in ``public_samples`` and ``writer_samples``.
    """

    def __init__(self, root: str) -> None:
        self.root = root
        self.units: dict[str, FakeUnit] = {}
        self.events: list[tuple[str, str]] = []
        self.created: list[UnitSpec] = []
        self.public_samples: list[str | None] = []
        self.writer_samples: list[list[str]] = []
        self.replica = FakeReplica()
        self.fail_on: dict[str, str] = {}
        self.interrupt_swap = False
        os.makedirs(self._volumes_dir, exist_ok=True)

    # helpers

    @property
    def _volumes_dir(self) -> str:
        return os.path.join(self.root, "volumes")

    def volume_path(self, name: str) -> str:
        return os.path.join(self._volumes_dir, name)

    def read_file(self, volume: str, path: str) -> bytes | None:
        full = os.path.join(self.volume_path(volume), path)
        if not os.path.isfile(full):
            return None
        with open(full, "rb") as f:
            return f.read()

    def write_file(self, volume: str, path: str, content: bytes) -> None:
        os.makedirs(self.volume_path(volume), exist_ok=True)
        with open(os.path.join(self.volume_path(volume), path), "wb") as f:
            f.write(content)

    def _record(self, op: str, target: str) -> None:
        self.events.append((op, target))
        if self.fail_on.get(target) == op:
            del self.fail_on[target]
            raise RuntimeCommandError(f"injected failure: {op} {target}")

    def writers(self) -> list[str]:
        """Running backends that opened the database read-write."""
        return sorted(
            unit.spec.name
            for unit in self.units.values()
            if unit.spec.role is UnitRole.BACKEND
            and unit.state is UnitState.RUNNING
            and not unit.spec.environment.get("DATABASE_URL", "").endswith("?mode=ro")
        )

    def _sample(self) -> None:
        serving = self.serving(PUBLIC_PORT)
        self.public_samples.append(serving.spec.name if serving else None)
        self.writer_samples.append(self.writers())

    def _find(self, name_or_id: str) -> FakeUnit:
        if name_or_id in self.units:
            return self.units[name_or_id]
        for unit in self.units.values():
            if unit.id == name_or_id:
                return unit
        raise UnitNotFoundError(f"no container with name or id {name_or_id!r}")

    def _require_volume(self, name: str) -> str:
        path = self.volume_path(name)
        if not os.path.isdir(path):
            raise VolumeNotFoundError(f"no such volume {name}")
        return path

    def _mounted_volume(self, mounts: list[Mount], target: str) -> str | None:
        for mount in mounts:
            if mount.target == target:
                return mount.source
        return None

    def behavior(self, unit: FakeUnit) -> str:
        if not unit.spec.command:
            return HEALTHY
        directory, _, artifact = unit.spec.command[0].rpartition("/")
        volume = self._mounted_volume(unit.spec.mounts, directory)
        if volume is None:
            return CRASH
        content = self.read_file(volume, artifact)
        if content is None:
            return CRASH
        return content.decode().strip()

    def _holder(self, port: int) -> FakeUnit | None:
        for unit in self.units.values():
            if unit.state is not UnitState.RUNNING:
                continue
            if any(binding.host_port == port for binding in unit.spec.ports):
                return unit
        return None

    def upstream(self, unit: FakeUnit) -> int | None:
        """Port a forwarder unit currently relays to."""
        volume = self._mounted_volume(unit.spec.mounts, ROUTING_MOUNT)
        content = self.read_file(volume, UPSTREAM_FILE) if volume else None
        if not content:
            return None
        return int(content.decode().strip().rpartition(":")[2])

    def serving(self, port: int) -> FakeUnit | None:
        """The running unit answering on ``port``, looking through forwarders."""
        unit = self._holder(port)
        if unit is None or unit.spec.role is not UnitRole.FORWARDER:
            return unit
        upstream = self.upstream(unit)
        target = self._holder(upstream) if upstream else None
        if target is not None and target.spec.role is UnitRole.FORWARDER:
            return None
        return target

    def running(self, name: str) -> bool:
        unit = self.units.get(name)
        return unit is not None and unit.state is UnitState.RUNNING

    # volumes

    def volume_exists(self, name: str) -> bool:
        return os.path.isdir(self.volume_path(name))

    def create_volume(self, name: str) -> None:
        self._record("volume_create", name)
        os.makedirs(self.volume_path(name), exist_ok=True)

    def remove_volume(self, name: str) -> None:
        self._record("volume_rm", name)
        shutil.rmtree(self._require_volume(name))

    def export_volume(self, name: str, archive_path: str) -> None:
        self._record("volume_export", name)
        path = self._require_volume(name)
        with tarfile.open(archive_path, "w") as tar:
            tar.add(path, arcname=".")

    def import_volume(self, name: str, archive_path: str) -> None:
        self._record("volume_import", name)
        path = self._require_volume(name)
        with tarfile.open(archive_path) as tar:
            tar.extractall(path, filter="data")

    def swap_volume_contents(self, staging: str, live: str) -> None:
        self._record("volume_swap", live)
        source = self._require_volume(staging)
        target = self._require_volume(live)
        self.write_file(live, RESTORE_MARKER, b"")
        for entry in os.listdir(target):
            if entry == RESTORE_MARKER:
                continue
            full = os.path.join(target, entry)
            if os.path.isdir(full):
                shutil.rmtree(full)
            else:
                os.remove(full)
        if self.interrupt_swap:
            self.interrupt_swap = False
            raise RuntimeCommandError(f"helper killed while swapping into {live}")
        for entry in os.listdir(source):
            shutil.copy2(os.path.join(source, entry), os.path.join(target, entry))
        os.remove(os.path.join(target, RESTORE_MARKER))
        self._sample()

    # files

    def file_size(self, volume: str, path: str) -> int | None:
        full = os.path.join(self._require_volume(volume), path)
        return os.path.getsize(full) if os.path.isfile(full) else None

    def move_file(self, volume: str, src: str, dst: str) -> None:
        self._record("file_move", f"{volume}/{dst}")
        base = self._require_volume(volume)
        os.replace(os.path.join(base, src), os.path.join(base, dst))
        self._sample()

    def remove_file(self, volume: str, path: str) -> None:
        self._record("file_rm", f"{volume}/{path}")
        full = os.path.join(self._require_volume(volume), path)
        if os.path.exists(full):
            os.remove(full)
        self._sample()

    def touch_file(self, volume: str, path: str) -> None:
        self._record("file_touch", f"{volume}/{path}")
        full = os.path.join(self._require_volume(volume), path)
        with open(full, "ab"):
            pass
        self._sample()

    def copy_into_volume(self, host_path: str, volume: str, dest: str) -> None:
        self._record("file_copy", f"{volume}/{dest}")
        shutil.copyfile(host_path, os.path.join(self._require_volume(volume), dest))
        self._sample()

    # units

    def unit_id(self, name: str) -> str | None:
        try:
            return self._find(name).id
        except UnitNotFoundError:
            return None

    def unit_state(self, name: str) -> UnitState:
        try:
            return self._find(name).state
        except UnitNotFoundError:
            return UnitState.ABSENT

    def create_unit(self, spec: UnitSpec) -> str:
        self._record("create", spec.name)
        if spec.name in self.units:
            raise RuntimeCommandError(f"name {spec.name} is already in use")
        unit = FakeUnit(id=uuid.uuid4().hex, spec=spec)
        self.units[spec.name] = unit
        self.created.append(spec)
        self._sample()
        return unit.id

    def start_unit(self, name: str) -> None:
        unit = self._find(name)
        self._record("start", unit.spec.name)
        for binding in unit.spec.ports:
            holder = self._holder(binding.host_port)
            if holder is not None and holder is not unit:
                raise RuntimeCommandError(
                    f"port {binding.host_port} is already in use by {holder.spec.name}"
                )
        unit.state = UnitState.RUNNING
        if unit.spec.role is UnitRole.BACKEND and self.behavior(unit) == CRASH:
            unit.state = UnitState.STOPPED
        self._sample()

    def stop_unit(self, name: str) -> None:
        unit = self._find(name)
        self._record("stop", unit.spec.name)
        if unit.state is UnitState.RUNNING:
            unit.state = UnitState.STOPPED
        self._sample()

    def remove_unit(self, name: str) -> None:
        unit = self._find(name)
        self._record("rm", unit.spec.name)
        if unit.state is UnitState.RUNNING:
            raise RuntimeCommandError(f"cannot remove running container {name}")
        del self.units[unit.spec.name]
        self._sample()

    def rename_unit(self, name: str, new_name: str) -> None:
        unit = self._find(name)
        self._record("rename", f"{unit.spec.name}->{new_name}")
        if new_name in self.units:
            raise RuntimeCommandError(f"name {new_name} is already in use")
        del self.units[unit.spec.name]
        unit.spec.name = new_name
        self.units[new_name] = unit
        self._sample()

    def checkpoint_unit(self, name: str, archive_path: str) -> None:
        unit = self._find(name)
        self._record("checkpoint", unit.spec.name)
        if unit.state is not UnitState.RUNNING:
            raise RuntimeCommandError(f"container {name} is not running")
        with open(archive_path, "w") as f:
            json.dump({"id": unit.id}, f)
        unit.state = UnitState.CHECKPOINTED
        self._sample()

    def restore_checkpoint(self, archive_path: str, name: str) -> str:
        self._record("restore", name)
        with open(archive_path) as f:
            source = self._find(json.load(f)["id"])
        if name in self.units:
            raise RuntimeCommandError(f"name {name} is already in use")
        spec = UnitSpec(
            name=name,
            role=source.spec.role,
            image=source.spec.image,
            command=list(source.spec.command),
            environment=dict(source.spec.environment),
            env_file=source.spec.env_file,
            ports=list(source.spec.ports),
            mounts=list(source.spec.mounts),
            host_network=source.spec.host_network,
        )
        unit = FakeUnit(id=uuid.uuid4().hex, spec=spec, state=UnitState.RUNNING)
        self.units[name] = unit
        self._sample()
        return unit.id

    def run_oneshot(
        self,
        image: str,
        args: list[str],
        mounts: list[Mount] | None = None,
    ) -> OneshotResult:
        self._record("oneshot", args[0] if args else image)
        if not args or args[0] != "restore":
            return OneshotResult(returncode=0)

        target = args[args.index("-o") + 1]
        live = args[-1]
        directory, _, staging_file = target.rpartition("/")
        volume = self._mounted_volume(mounts or [], directory)
        if self.replica.returncode != 0:
            return OneshotResult(returncode=self.replica.returncode, stderr="boom")
        if self.replica.content is not None:
            self.write_file(volume, staging_file, self.replica.content)
        if self.replica.writes_live:
            self.write_file(volume, live.rpartition("/")[2], b"intruder")
        return OneshotResult(returncode=0)

    # scenario setup

    def seed_deployment(
        self,
        config: DeployConfig,
        behavior: str = HEALTHY,
        database: bytes = b"v1-data",
        with_replicator: bool = True,
        forwarded: bool = True,
    ) -> FakeUnit:
        """
        Simulate a deployment that is already serving.

        With ``forwarded`` the backend sits behind the forwarder on the
        backend port; otherwise it publishes the public port itself.
        """
        storage = config.storage
        network = config.network
        artifact = f"{config.service.binary_name}-old"
        self.write_file(storage.binary_volume, artifact, behavior.encode())
        self.write_file(storage.data_volume, storage.database_file, database)
        port = network.backend_port if forwarded else network.host_port
        spec = UnitSpec(
            name=config.service.backend_unit,
            role=UnitRole.BACKEND,
            image=config.service.backend_image,
            command=[f"{storage.binary_mount}/{artifact}"],
            environment={"DATABASE_URL": f"sqlite:{storage.database_path}"},
            ports=_ports(config, port),
            mounts=[
                Mount(storage.data_volume, storage.data_mount),
                Mount(storage.binary_volume, storage.binary_mount, read_only=True),
            ],
        )
        unit = FakeUnit(id=uuid.uuid4().hex, spec=spec, state=UnitState.RUNNING)
        self.units[spec.name] = unit
        if forwarded:
            forwarder = PortForwarder(self, config.service, network)
            self.write_file(
                forwarder.routing_volume,
                UPSTREAM_FILE,
                f"{forwarder.upstream_address(port)}\n".encode(),
            )
            forwarder_spec = forwarder.unit_spec()
            self.units[forwarder_spec.name] = FakeUnit(
                id=uuid.uuid4().hex, spec=forwarder_spec, state=UnitState.RUNNING
            )
        if with_replicator:
            replicator = UnitSpec(
                name=config.replication.unit,
                role=UnitRole.REPLICATION_AGENT,
                image=config.replication.image,
            )
            self.units[replicator.name] = FakeUnit(
                id=uuid.uuid4().hex, spec=replicator, state=UnitState.RUNNING
            )
        return unit


def _ports(config: DeployConfig, host_port: int) -> list[PortBinding]:
    return [
        PortBinding(host_port, config.network.container_port, config.network.host_ip)
    ]


# ── Fake backend ─────────────────────────────────────────────────


def create_fake_backend():
    """FastAPI stand-in for the GraphQL backend."""
    from fastapi import Body, FastAPI, Header
    from fastapi.responses import JSONResponse

    app = FastAPI()

    @app.post("/")
    def graphql(
        payload: dict = Body(...),
        x_fake_behavior: str = Header(HEALTHY),
    ):
        if "currencies" not in payload.get("query", ""):
            return JSONResponse({"errors": [{"message": "unknown query"}]}, 400)
        if x_fake_behavior == ERROR:
            return JSONResponse({"errors": [{"message": "database locked"}]}, 500)
        if x_fake_behavior == EMPTY:
            return {"data": {"currencies": []}}
        return {"data": {"currencies": CURRENCIES}}

    return app


def routing_transport(runtime: FakeRuntime, backend_client) -> httpx.MockTransport:
    """Route health requests to whichever fake unit holds the port."""

    def handler(request: httpx.Request) -> httpx.Response:
        port = request.url.port
        runtime.events.append(("probe", str(port)))
        unit = runtime.serving(port)
        if unit is None:
            raise httpx.ConnectError("Connection refused", request=request)
        response = backend_client.post(
            "/",
            content=request.content,
            headers={
                "Content-Type": "application/json",
                "X-Fake-Behavior": runtime.behavior(unit),
            },
        )
        return httpx.Response(response.status_code, content=response.content)

    return httpx.MockTransport(handler)


# ── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture
def config(tmp_path) -> DeployConfig:
    """Config rooted in a temporary directory with fast health checks."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return load_config_from_dict(
        {
            "storage": {
                "config_dir": str(config_dir),
                "archive_dir": str(tmp_path / "backups"),
            },
            "environment": {"env_file": None},
            "health": {"max_attempts": 2, "initial_delay": 0.0},
            "ledger": {"path": str(tmp_path / "ledger.db")},
        }
    )


@pytest.fixture
def fake_runtime(tmp_path) -> FakeRuntime:
    return FakeRuntime(str(tmp_path / "runtime"))


@pytest.fixture
def ledger(config) -> AttemptLedger:
    return AttemptLedger(config.ledger.resolved_path())


@pytest.fixture
def backend_client():
    """TestClient for the fake GraphQL backend."""
    try:
        from fastapi.testclient import TestClient
    except ImportError:
        pytest.skip("FastAPI not installed")
    with TestClient(create_fake_backend()) as client:
        yield client


@pytest.fixture
def verifier(config, fake_runtime, backend_client) -> HealthVerifier:
    client = httpx.Client(transport=routing_transport(fake_runtime, backend_client))
    yield HealthVerifier(config.health, client=client, sleep=lambda _: None)
    client.close()


@pytest.fixture
def make_controller(
    fake_runtime, ledger, verifier
) -> Callable[[DeployConfig], RollbackController]:
    def _make(cfg: DeployConfig) -> RollbackController:
        return RollbackController(cfg, fake_runtime, ledger, verifier)

    return _make


@pytest.fixture
def controller(config, make_controller) -> RollbackController:
    return make_controller(config)


@pytest.fixture
def artifact(tmp_path) -> Callable[[str], str]:
    """Write a fake backend binary whose content is its behavior."""

    def _write(behavior: str = HEALTHY) -> str:
        path = tmp_path / f"deepsplit_be-{behavior}"
        path.write_text(behavior)
        return str(path)

    return _write
