"""
Configuration Schema
~~~~~~~~~~~~~~~~~~~~

Pydantic models for validating swapguard configuration.
"""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, field_validator, model_validator

from swapguard.core.status import Strategy

__all__ = [
    "DeployConfig",
    "ServiceConfig",
    "NetworkConfig",
    "StorageConfig",
    "EnvironmentConfig",
    "ReplicationConfig",
    "HealthConfig",
    "RollbackConfig",
    "RuntimeConfig",
    "LedgerConfig",
]


class ServiceConfig(BaseModel):
    """Identity of the deployed service."""

    name: str = "deepsplit"
    backend_unit: str = "deepsplit_be-dev"
    backend_image: str = "alpine:latest"
    binary_name: str = "deepsplit_be"

    @property
    def candidate_unit(self) -> str:
        return f"{self.backend_unit}-candidate"

    @property
    def parked_unit(self) -> str:
        return f"{self.backend_unit}-previous"

    @property
    def forwarder_unit(self) -> str:
        return f"{self.backend_unit}-forwarder"


class NetworkConfig(BaseModel):
    """
    Port bindings and the public port forwarder.

    The forwarder owns ``host_port`` and relays each connection to the
    port named in its routing volume. The live backend publishes
    ``backend_port`` and a candidate publishes ``candidate_port``, so the
    public port changes hands by rewriting one file.
    """

    host_ip: str = "127.0.0.1"
    host_port: int = Field(default=33371, ge=1, le=65535)
    candidate_port: int = Field(default=33372, ge=1, le=65535)
    backend_port: int = Field(default=33373, ge=1, le=65535)
    container_port: int = Field(default=8000, ge=1, le=65535)
    forwarder_image: str = "docker.io/alpine/socat:latest"
    routing_volume: str = "swapguard_routing"

    @model_validator(mode="after")
    def _distinct_ports(self) -> NetworkConfig:
        ports = (self.host_port, self.candidate_port, self.backend_port)
        if len(set(ports)) != len(ports):
            raise ValueError(
                "host_port, candidate_port and backend_port must all differ"
            )
        return self


class StorageConfig(BaseModel):
    """Volumes, in-volume paths and the host archive directory."""

    data_volume: str = "data"
    binary_volume: str = "server_binary"
    data_mount: str = "/data"
    binary_mount: str = "/server_binary"
    database_file: str = "deepsplit.sqlite"
    staging_file: str = "deepsplit-restored.sqlite"
    config_dir: str = "./config"
    config_mount: str = "/config"
    archive_dir: str = "./backups"

    @field_validator("database_file", "staging_file")
    @classmethod
    def _bare_filename(cls, v: str) -> str:
        if not v or "/" in v:
            raise ValueError(f"Expected a bare filename, got {v!r}")
        return v

    @model_validator(mode="after")
    def _distinct_files(self) -> StorageConfig:
        if self.database_file == self.staging_file:
            raise ValueError("staging_file must differ from database_file")
        if self.data_volume == self.binary_volume:
            raise ValueError("data_volume and binary_volume must differ")
        return self

    @property
    def database_path(self) -> str:
        """Path of the live database inside the backend unit."""
        return f"{self.data_mount}/{self.database_file}"

    @property
    def staging_path(self) -> str:
        return f"{self.data_mount}/{self.staging_file}"


class EnvironmentConfig(BaseModel):
    """Environment bindings passed to the backend unit."""

    env_file: str | None = ".env"
    variables: dict[str, str] = Field(default_factory=dict)


class ReplicationConfig(BaseModel):
    """Litestream replication agent settings."""

    enabled: bool = True
    unit: str = "litestream-dev"
    image: str = "litestream/litestream:latest"
    config_path: str = "/config/litestream.yml"


class HealthConfig(BaseModel):
    """Health probe request and retry policy."""

    path: str = "/"
    query: str = "{ currencies { displayName } }"
    data_key: str = "currencies"
    empty_sentinel: str = "[]"
    timeout: float = Field(default=5.0, gt=0.0)
    max_attempts: int = Field(default=5, ge=1, le=50)
    initial_delay: float = Field(default=1.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=10.0, ge=0.0)

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"


class RollbackConfig(BaseModel):
    """Replacement strategy and recovery options."""

    strategy: Strategy = Strategy.BLUE_GREEN
    use_checkpoints: bool = False

    @model_validator(mode="after")
    def _checkpoints_need_recreate(self) -> RollbackConfig:
        if self.use_checkpoints and self.strategy is not Strategy.RECREATE:
            raise ValueError(
                "use_checkpoints only applies to the 'recreate' strategy; "
                "blue_green never stops the serving unit before commit"
            )
        return self


class RuntimeConfig(BaseModel):
    """Container runtime CLI settings."""

    executable: str = "podman"
    helper_image: str = "alpine:latest"
    command_timeout: float = Field(default=120.0, gt=0.0)


class LedgerConfig(BaseModel):
    """Location of the attempt ledger."""

    path: str | None = None

    def resolved_path(self) -> str:
        if self.path:
            return os.path.expanduser(self.path)
        return os.path.join(os.path.expanduser("~"), ".swapguard", "ledger.db")


class DeployConfig(BaseModel):
    """
    Root configuration model for swapguard.

    Validated on load with clear error messages for invalid values.
    """

    version: str = "1.0"
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    replication: ReplicationConfig = Field(default_factory=ReplicationConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
