"""
Public Port Forwarder
~~~~~~~~~~~~~~~~~~~~~

A socat unit owns the public port and relays every new connection to
the upstream address stored in a small routing volume. Backends publish
private loopback ports, so handing the public port from one backend to
another is a single atomic file replacement: connections accepted
before the switch finish against the old upstream, the next one goes to
the new upstream, and no connection is ever refused in between.
"""

from __future__ import annotations

import logging
import os
import tempfile

from swapguard.config.schema import NetworkConfig, ServiceConfig
from swapguard.core.models import Mount, PortBinding, UnitSpec
from swapguard.core.status import UnitRole
from swapguard.exceptions import ProcessLifecycleError, RuntimeCommandError
from swapguard.runtime.base import ContainerRuntime

__all__ = ["PortForwarder", "ROUTING_MOUNT", "UPSTREAM_FILE"]

logger = logging.getLogger(__name__)

ROUTING_MOUNT = "/routing"
UPSTREAM_FILE = "upstream"


class PortForwarder:
    """
    Manages the forwarder unit and its routing volume.

    Args:
        runtime: Container runtime hosting the unit and volume.
        service: Source of the forwarder unit name.
        network: Public port, loopback address, image and routing volume.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        service: ServiceConfig,
        network: NetworkConfig,
    ) -> None:
        self._runtime = runtime
        self._service = service
        self._network = network

    @property
    def unit_name(self) -> str:
        return self._service.forwarder_unit

    @property
    def routing_volume(self) -> str:
        return self._network.routing_volume

    def upstream_address(self, port: int) -> str:
        return f"{self._network.host_ip}:{port}"

    def unit_spec(self) -> UnitSpec:
        """Spec for the socat unit listening on the public port."""
        network = self._network
        listen = (
            f"TCP-LISTEN:{network.host_port},bind={network.host_ip},"
            f"fork,reuseaddr"
        )
        relay = f"SYSTEM:exec socat STDIO TCP:$(cat {ROUTING_MOUNT}/{UPSTREAM_FILE})"
        return UnitSpec(
            name=self.unit_name,
            role=UnitRole.FORWARDER,
            image=network.forwarder_image,
            command=[listen, relay],
            ports=[PortBinding(network.host_port, network.host_port, network.host_ip)],
            mounts=[Mount(network.routing_volume, ROUTING_MOUNT, read_only=True)],
            host_network=True,
        )

    def route_to(self, port: int) -> None:
        """
        Point the public port at ``port`` on the loopback address.

        Raises:
            ProcessLifecycleError: If the routing file cannot be replaced.
        """
        address = self.upstream_address(port)
        fd, path = tempfile.mkstemp(prefix="swapguard-upstream-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{address}\n")
            self._runtime.copy_into_volume(path, self.routing_volume, UPSTREAM_FILE)
        except RuntimeCommandError as exc:
            raise ProcessLifecycleError(
                f"Cannot route port {self._network.host_port} to {address}: {exc}",
                unit=self.unit_name,
                operation="route",
            ) from exc
        finally:
            os.remove(path)
        logger.info("Port %d now routes to %s", self._network.host_port, address)
