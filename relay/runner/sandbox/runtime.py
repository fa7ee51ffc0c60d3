import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from relay.common.errors import LaunchError
from relay.runner.utils.logger import logger

PULL_FAILURE_MARKERS = (
    "unable to find image",
    "pull access denied",
    "manifest unknown",
    "repository does not exist",
    "invalid reference format",
)


@dataclass
class ContainerHandle:
    container_id: str
    name: str
    image: str


class ContainerRuntime(ABC):
    """
    The launch primitive the core builds on: run image X with env/command,
    wait for the exit code, kill it. Image pull and daemon problems surface as
    LaunchError so callers can tell them apart from a script that exited non-zero.
    """

    @abstractmethod
    async def launch(self, image: str, env: Dict[str, str], command: Optional[List[str]] = None,
                     name: Optional[str] = None) -> ContainerHandle:
        pass

    @abstractmethod
    async def wait(self, handle: ContainerHandle) -> int:
        pass

    @abstractmethod
    async def kill(self, handle: ContainerHandle) -> None:
        pass

    async def address(self, handle: ContainerHandle) -> str:
        return "127.0.0.1"

    async def remove(self, handle: ContainerHandle) -> None:
        pass

    async def discard(self, name: str) -> None:
        """Removes a container by name, for launches abandoned before a handle existed."""
        pass


class DockerRuntime(ContainerRuntime):
    """ContainerRuntime backed by the docker CLI."""

    def __init__(self, binary: str = "docker", network: Optional[str] = None):
        self.binary = binary
        self.network = network

    async def _docker(self, *args: str, env: Optional[Dict[str, str]] = None) -> Tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise LaunchError(f"Container runtime unavailable: {e}", LaunchError.RUNTIME_UNAVAILABLE)
        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        return proc.returncode, out.decode().strip(), err.decode().strip()

    async def launch(self, image, env, command=None, name=None) -> ContainerHandle:
        args = ["run", "-d"]
        if name:
            args += ["--name", name]
        if self.network:
            args += ["--network", self.network]
        # `-e KEY` makes docker read the value from its own environment, keeping
        # credentials off the process command line
        for key in env:
            args += ["-e", key]
        args.append(image)
        if command:
            args += list(command)

        rc, out, err = await self._docker(*args, env={**os.environ, **env})
        if rc != 0:
            lowered = err.lower()
            kind = LaunchError.RUNTIME_UNAVAILABLE
            if any(marker in lowered for marker in PULL_FAILURE_MARKERS):
                kind = LaunchError.IMAGE_PULL
            logger.error(f"docker run {image} failed ({rc}): {err}", extra={"event": "launch_failed"})
            raise LaunchError(err or f"docker run exited {rc}", kind)

        container_id = out.splitlines()[-1] if out else ""
        logger.info(f"Launched {image} as {container_id[:12]}", extra={"event": "container_launched"})
        return ContainerHandle(container_id=container_id, name=name or container_id, image=image)

    async def wait(self, handle: ContainerHandle) -> int:
        rc, out, err = await self._docker("wait", handle.container_id)
        if rc != 0:
            raise RuntimeError(f"docker wait {handle.container_id[:12]} failed: {err}")
        return int(out.splitlines()[-1])

    async def kill(self, handle: ContainerHandle) -> None:
        rc, _, err = await self._docker("kill", handle.container_id)
        if rc != 0:
            logger.warning(f"docker kill {handle.container_id[:12]} failed: {err}")

    async def address(self, handle: ContainerHandle) -> str:
        rc, out, err = await self._docker(
            "inspect", "-f", "{{range .NetworkSettings.Networks}}{{.IPAddress}} {{end}}", handle.container_id
        )
        if rc != 0 or not out.split():
            raise LaunchError(f"Could not resolve address of {handle.name}: {err}", LaunchError.RUNTIME_UNAVAILABLE)
        return out.split()[0]

    async def remove(self, handle: ContainerHandle) -> None:
        rc, _, err = await self._docker("rm", "-f", handle.container_id)
        if rc != 0:
            logger.warning(f"docker rm {handle.container_id[:12]} failed: {err}")

    async def discard(self, name: str) -> None:
        rc, _, err = await self._docker("rm", "-f", name)
        if rc != 0 and "no such container" not in err.lower():
            logger.warning(f"docker rm {name} failed: {err}")
