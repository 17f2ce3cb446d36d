"""Container runtime boundary: the interface and its podman implementation."""

from swapguard.runtime.base import ContainerRuntime, OneshotResult
from swapguard.runtime.podman import PodmanRuntime

__all__ = [
    "ContainerRuntime",
    "OneshotResult",
    "PodmanRuntime",
]
