"""Shared fixtures: a scriptable in-memory container runtime and a throwaway store."""
import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from relay.common.errors import LaunchError
from relay.controller.metadata.service import MetadataService
from relay.controller.scheduler.core import WorkflowScheduler
from relay.controller.store.database import RunStore
from relay.controller.workflows.engine import WorkflowManager
from relay.runner.sandbox.executor import StepExecutor
from relay.runner.sandbox.runtime import ContainerHandle, ContainerRuntime

METADATA_URL = "http://relay.test"


@dataclass
class Script:
    """How a fake container behaves once launched."""
    exit_code: int = 0
    action: Optional[Callable[[Dict[str, str]], Awaitable[Any]]] = None
    hang: bool = False
    delay: float = 0
    launch_error: Optional[str] = None
    launch_error_kind: str = LaunchError.IMAGE_PULL
    launch_delay: float = 0


@dataclass
class Launched:
    handle: ContainerHandle
    env: Dict[str, str]
    command: Optional[List[str]]


class FakeRuntime(ContainerRuntime):
    """
    Runs "containers" as asyncio tasks. Each image gets a Script; a script's
    action receives the container env, so tests can call the metadata service
    with the credential the controller injected.
    """

    def __init__(self):
        self.scripts: Dict[str, Script] = {}
        self.launched: List[Launched] = []
        self.killed: List[str] = []
        self.removed: List[str] = []
        self.discarded: List[str] = []
        self.errors: List[BaseException] = []
        self._exits: Dict[str, asyncio.Future] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def script(self, image: str, **kwargs) -> Script:
        self.scripts[image] = Script(**kwargs)
        return self.scripts[image]

    def launches_of(self, image: str) -> List[Launched]:
        return [l for l in self.launched if l.handle.image == image]

    async def launch(self, image, env, command=None, name=None) -> ContainerHandle:
        script = self.scripts.get(image, Script())
        if script.launch_delay:
            await asyncio.sleep(script.launch_delay)
        if script.launch_error:
            raise LaunchError(script.launch_error, script.launch_error_kind)

        container_id = f"c{len(self.launched) + 1}"
        handle = ContainerHandle(container_id=container_id, name=name or container_id, image=image)
        self.launched.append(Launched(handle, dict(env), command))
        self._exits[container_id] = asyncio.get_running_loop().create_future()
        self._tasks[container_id] = asyncio.create_task(self._run(container_id, script, dict(env)))
        return handle

    async def _run(self, container_id: str, script: Script, env: Dict[str, str]):
        exit_code = script.exit_code
        try:
            if script.delay:
                await asyncio.sleep(script.delay)
            if script.action:
                await script.action(env)
        except Exception as e:
            self.errors.append(e)
            exit_code = 1
        if script.hang:
            return
        self.exit(container_id, exit_code)

    def exit(self, container_id: str, exit_code: int):
        future = self._exits[container_id]
        if not future.done():
            future.set_result(exit_code)

    async def wait(self, handle: ContainerHandle) -> int:
        return await asyncio.shield(self._exits[handle.container_id])

    async def kill(self, handle: ContainerHandle) -> None:
        self.killed.append(handle.container_id)
        task = self._tasks.get(handle.container_id)
        if task and not task.done():
            task.cancel()
        self.exit(handle.container_id, 137)

    async def address(self, handle: ContainerHandle) -> str:
        return f"10.0.0.{handle.container_id[1:]}"

    async def remove(self, handle: ContainerHandle) -> None:
        self.removed.append(handle.container_id)

    async def discard(self, name: str) -> None:
        self.discarded.append(name)


def temp_store(test_case) -> RunStore:
    """A RunStore on a temp file removed when the test finishes."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    test_case.addCleanup(os.remove, path)
    return RunStore(path)


class Controller:
    """The scheduler side of the controller wired to a FakeRuntime, without HTTP."""

    def __init__(self, store: RunStore, runtime: Optional[FakeRuntime] = None):
        self.store = store
        self.runtime = runtime or FakeRuntime()
        self.metadata = MetadataService(store)
        self.executor = StepExecutor(self.runtime, METADATA_URL)
        self.scheduler = WorkflowScheduler(store, self.metadata, self.executor)
        self.manager = WorkflowManager(self.scheduler, store)
