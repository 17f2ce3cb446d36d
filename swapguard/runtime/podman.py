"""
Podman Runtime
~~~~~~~~~~~~~~

ContainerRuntime implementation that drives the ``podman`` CLI.

File operations inside volumes run in a short-lived helper container
(``alpine`` by default) with the volume mounted at ``/vol``.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Callable
from typing import Any

from swapguard.core.models import Mount, UnitSpec
from swapguard.core.status import UnitState
from swapguard.exceptions import (
    RuntimeCommandError,
    UnitNotFoundError,
    VolumeNotFoundError,
)
from swapguard.runtime.base import RESTORE_MARKER, ContainerRuntime, OneshotResult

__all__ = ["PodmanRuntime"]

logger = logging.getLogger(__name__)

_UNIT_MISSING = ("no such container", "no container with name or id")
_VOLUME_MISSING = ("no such volume", "no volume with name")

_STATE_MAP = {
    "running": UnitState.RUNNING,
    "created": UnitState.CREATED,
    "configured": UnitState.CREATED,
    "initialized": UnitState.CREATED,
    "exited": UnitState.STOPPED,
    "stopped": UnitState.STOPPED,
    "paused": UnitState.STOPPED,
}

_SWAP_SCRIPT = f"""\
set -e
marker=/live/{RESTORE_MARKER}
tmp=/live/.swapguard-swap
touch "$marker"
sync
rm -rf "$tmp"
mkdir "$tmp"
cp -a /staging/. "$tmp"/
rm -f "$tmp/{RESTORE_MARKER}"
rm -f /live/*-wal /live/*-shm
for dst in /live/* /live/.[!.]*; do
  [ -e "$dst" ] || continue
  case "$dst" in "$tmp"|"$marker") continue ;; esac
  name=$(basename "$dst")
  [ -e "/staging/$name" ] || rm -rf "$dst"
done
for src in "$tmp"/* "$tmp"/.[!.]*; do
  [ -e "$src" ] || continue
  name=$(basename "$src")
  if [ -d "$src" ] && [ -e "/live/$name" ]; then rm -rf "/live/$name"; fi
  mv -f "$src" "/live/$name"
done
rmdir "$tmp"
sync
rm -f "$marker"
"""

Runner = Callable[..., subprocess.CompletedProcess]


class PodmanRuntime(ContainerRuntime):
    """
    Container runtime backed by the podman CLI.

    Args:
        executable: Name or path of the podman binary.
        helper_image: Image used for in-volume file operations.
        timeout: Per-command timeout in seconds.
        runner: Replacement for ``subprocess.run`` (used by tests).
    """

    def __init__(
        self,
        executable: str = "podman",
        helper_image: str = "alpine:latest",
        timeout: float = 120.0,
        runner: Runner | None = None,
    ) -> None:
        self._executable = executable
        self._helper_image = helper_image
        self._timeout = timeout
        self._runner = runner or subprocess.run

    @classmethod
    def from_config(cls, config: Any) -> PodmanRuntime:
        """Build a runtime from a ``DeployConfig``."""
        return cls(
            executable=config.runtime.executable,
            helper_image=config.runtime.helper_image,
            timeout=config.runtime.command_timeout,
        )

    # ── Command execution ────────────────────────────────────────

    def _exec(self, args: list[str]) -> subprocess.CompletedProcess:
        cmd = [self._executable, *args]
        logger.debug("$ %s", shlex.join(cmd))
        try:
            return self._runner(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise RuntimeCommandError(
                f"Command timed out after {self._timeout}s: {shlex.join(cmd)}",
                command=cmd,
            ) from exc
        except OSError as exc:
            raise RuntimeCommandError(
                f"Cannot execute {self._executable}: {exc}",
                command=cmd,
            ) from exc

    def _run(self, args: list[str]) -> str:
        """Run a podman command and return stdout, mapping failures."""
        result = self._exec(args)
        if result.returncode == 0:
            return (result.stdout or "").strip()

        cmd = [self._executable, *args]
        stderr = (result.stderr or "").strip()
        lowered = stderr.lower()
        if any(marker in lowered for marker in _UNIT_MISSING):
            error_cls: type[RuntimeCommandError] = UnitNotFoundError
        elif any(marker in lowered for marker in _VOLUME_MISSING):
            error_cls = VolumeNotFoundError
        else:
            error_cls = RuntimeCommandError
        raise error_cls(
            f"{shlex.join(cmd)} exited {result.returncode}: {stderr}",
            command=cmd,
            returncode=result.returncode,
            stderr=stderr,
        )

    def _helper(self, volume: str, script: str, *extra: Mount) -> OneshotResult:
        mounts = [Mount(volume, "/vol"), *extra]
        return self.run_oneshot(self._helper_image, ["sh", "-c", script], mounts)

    def _helper_checked(self, volume: str, script: str, *extra: Mount) -> None:
        result = self._helper(volume, script, *extra)
        if not result.ok:
            raise RuntimeCommandError(
                f"Helper script failed in volume {volume}: {result.stderr.strip()}",
                command=["sh", "-c", script],
                returncode=result.returncode,
                stderr=result.stderr,
            )

    # ── Volumes ──────────────────────────────────────────────────

    def volume_exists(self, name: str) -> bool:
        result = self._exec(["volume", "exists", name])
        if result.returncode in (0, 1):
            return result.returncode == 0
        raise RuntimeCommandError(
            f"podman volume exists {name} exited {result.returncode}",
            command=[self._executable, "volume", "exists", name],
            returncode=result.returncode,
            stderr=result.stderr or "",
        )

    def create_volume(self, name: str) -> None:
        self._run(["volume", "create", "--ignore", name])

    def remove_volume(self, name: str) -> None:
        self._run(["volume", "rm", name])

    def export_volume(self, name: str, archive_path: str) -> None:
        self._run(["volume", "export", name, "--output", archive_path])

    def import_volume(self, name: str, archive_path: str) -> None:
        self._run(["volume", "import", name, archive_path])

    def swap_volume_contents(self, staging: str, live: str) -> None:
        result = self.run_oneshot(
            self._helper_image,
            ["sh", "-c", _SWAP_SCRIPT],
            [Mount(staging, "/staging", read_only=True), Mount(live, "/live")],
        )
        if not result.ok:
            raise RuntimeCommandError(
                f"Swapping {staging} into {live} failed: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

    # ── Files inside volumes ─────────────────────────────────────

    def file_size(self, volume: str, path: str) -> int | None:
        target = shlex.quote(f"/vol/{path}")
        result = self._helper(
            volume, f"if [ -f {target} ]; then stat -c %s {target}; fi"
        )
        if not result.ok:
            raise RuntimeCommandError(
                f"Cannot stat {path} in volume {volume}: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        output = result.stdout.strip()
        return int(output) if output else None

    def move_file(self, volume: str, src: str, dst: str) -> None:
        self._helper_checked(
            volume,
            f"mv -f {shlex.quote('/vol/' + src)} {shlex.quote('/vol/' + dst)}",
        )

    def remove_file(self, volume: str, path: str) -> None:
        self._helper_checked(volume, f"rm -f {shlex.quote('/vol/' + path)}")

    def touch_file(self, volume: str, path: str) -> None:
        self._helper_checked(volume, f"touch {shlex.quote('/vol/' + path)}")

    def copy_into_volume(self, host_path: str, volume: str, dest: str) -> None:
        target = shlex.quote(f"/vol/{dest}")
        self._helper_checked(
            volume,
            f"cp /artifact {target}.tmp && chmod +x {target}.tmp "
            f"&& mv -f {target}.tmp {target}",
            Mount(os.path.abspath(host_path), "/artifact", read_only=True),
        )

    # ── Units ────────────────────────────────────────────────────

    def unit_id(self, name: str) -> str | None:
        try:
            return self._run(["container", "inspect", "--format", "{{.Id}}", name])
        except UnitNotFoundError:
            return None

    def unit_state(self, name: str) -> UnitState:
        try:
            output = self._run(
                [
                    "container",
                    "inspect",
                    "--format",
                    "{{.State.Status}} {{.State.Checkpointed}}",
                    name,
                ]
            )
        except UnitNotFoundError:
            return UnitState.ABSENT

        status, _, checkpointed = output.partition(" ")
        if checkpointed.strip() == "true" and status != "running":
            return UnitState.CHECKPOINTED
        return _STATE_MAP.get(status, UnitState.STOPPED)

    def create_unit(self, spec: UnitSpec) -> str:
        args = ["create", "--name", spec.name]
        for key, value in spec.environment.items():
            args += ["-e", f"{key}={value}"]
        if spec.env_file:
            args += ["--env-file", spec.env_file]
        if spec.host_network:
            # Ports are bound by the process itself; podman cannot publish them.
            args += ["--network", "host"]
        else:
            for port in spec.ports:
                args += ["-p", port.to_arg()]
        for mount in spec.mounts:
            args += ["-v", mount.to_arg()]
        args.append(spec.image)
        args += spec.command
        return self._run(args)

    def start_unit(self, name: str) -> None:
        self._run(["start", name])

    def stop_unit(self, name: str) -> None:
        self._run(["stop", name])

    def remove_unit(self, name: str) -> None:
        self._run(["rm", name])

    def rename_unit(self, name: str, new_name: str) -> None:
        self._run(["rename", name, new_name])

    def checkpoint_unit(self, name: str, archive_path: str) -> None:
        self._run(["container", "checkpoint", f"--export={archive_path}", name])

    def restore_checkpoint(self, archive_path: str, name: str) -> str:
        self._run(
            ["container", "restore", f"--import={archive_path}", "--name", name]
        )
        return self.unit_id(name) or ""

    def run_oneshot(
        self,
        image: str,
        args: list[str],
        mounts: list[Mount] | None = None,
    ) -> OneshotResult:
        cmd = ["run", "--rm"]
        for mount in mounts or []:
            cmd += ["-v", mount.to_arg()]
        cmd.append(image)
        cmd += args
        result = self._exec(cmd)
        return OneshotResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
