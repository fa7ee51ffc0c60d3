import asyncio
import shlex
import time
from pydantic import BaseModel, Field
from typing import Dict, List, Optional

from relay.common.errors import LaunchError
from relay.common.models.runs import ErrorKind, StepStatus
from relay.runner.sandbox.runtime import ContainerHandle, ContainerRuntime
from relay.runner.utils.logger import logger


class StepLaunch(BaseModel):
    step_run_id: str
    image: str
    token: str
    input: Optional[List[str]] = None
    input_file: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None
    name: Optional[str] = None


class StepResult(BaseModel):
    step_run_id: str
    status: StepStatus
    exit_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


def build_command(input: Optional[List[str]] = None, input_file: Optional[str] = None) -> Optional[List[str]]:
    """Inline lines run through sh; an input file is downloaded then run; otherwise the image entrypoint."""
    if input:
        return ["/bin/sh", "-c", "\n".join(input)]
    if input_file:
        script = f"curl -fsSL {shlex.quote(input_file)} -o /tmp/relay-input && exec /bin/sh /tmp/relay-input"
        return ["/bin/sh", "-c", script]
    return None


def build_env(metadata_url: str, token: str, owner_id: str, extra: Optional[Dict[str, str]] = None,
              input_file: Optional[str] = None, owner_var: str = "RELAY_STEP_RUN_ID") -> Dict[str, str]:
    env = dict(extra or {})
    env.update({
        "RELAY_METADATA_URL": metadata_url,
        "RELAY_METADATA_TOKEN": token,
        owner_var: owner_id,
    })
    if input_file:
        env["RELAY_INPUT_FILE"] = input_file
    return env


class StepExecutor:
    """
    Runs exactly one step container to completion. All state exchange happens
    through the Metadata API the container calls itself; the executor only
    reports how the container ended. Retries are not its concern.

    If the awaiting task is cancelled the container is killed and CancelledError
    propagates, so the caller records the CANCELED transition.
    """

    def __init__(self, runtime: ContainerRuntime, metadata_url: str):
        self.runtime = runtime
        self.metadata_url = metadata_url

    async def run(self, launch: StepLaunch) -> StepResult:
        start_time = time.time()
        env = build_env(self.metadata_url, launch.token, launch.step_run_id, launch.env, launch.input_file)
        command = build_command(launch.input, launch.input_file)

        def result(status, exit_code=None, kind=None, error=None) -> StepResult:
            return StepResult(
                step_run_id=launch.step_run_id,
                status=status,
                exit_code=exit_code,
                error_kind=kind,
                error=error,
                duration_ms=(time.time() - start_time) * 1000,
            )

        try:
            handle = await self.runtime.launch(launch.image, env, command, name=launch.name)
        except LaunchError as e:
            logger.error(f"Step {launch.step_run_id} failed to launch ({e.kind}): {e}")
            return result(StepStatus.FAILED, kind=ErrorKind.LAUNCH, error=f"{e.kind}: {e}")
        except asyncio.CancelledError:
            logger.info(f"Step {launch.step_run_id} cancelled during launch")
            if launch.name:
                await self._discard(launch.name)
            raise

        try:
            if launch.timeout_seconds:
                exit_code = await asyncio.wait_for(self.runtime.wait(handle), timeout=launch.timeout_seconds)
            else:
                exit_code = await self.runtime.wait(handle)
        except asyncio.TimeoutError:
            logger.warning(f"Step {launch.step_run_id} exceeded {launch.timeout_seconds}s, killing")
            await self._stop(handle)
            return result(
                StepStatus.FAILED, kind=ErrorKind.TIMEOUT,
                error=f"Exceeded timeout of {launch.timeout_seconds}s",
            )
        except asyncio.CancelledError:
            logger.info(f"Step {launch.step_run_id} cancelled, killing container")
            await self._stop(handle)
            raise
        except Exception as e:
            logger.error(f"Step {launch.step_run_id} lost its container: {e}")
            await self._stop(handle)
            return result(StepStatus.FAILED, kind=ErrorKind.EXIT, error=str(e))

        await self._cleanup(handle)
        if exit_code == 0:
            return result(StepStatus.SUCCEEDED, exit_code=0)
        return result(StepStatus.FAILED, exit_code=exit_code, kind=ErrorKind.EXIT, error=f"Exited with code {exit_code}")

    async def _stop(self, handle: ContainerHandle):
        try:
            await self.runtime.kill(handle)
        except Exception as e:
            logger.warning(f"Kill of {handle.name} failed: {e}")
        await self._cleanup(handle)

    async def _discard(self, name: str):
        try:
            await self.runtime.discard(name)
        except Exception as e:
            logger.warning(f"Cleanup of {name} failed: {e}")

    async def _cleanup(self, handle: ContainerHandle):
        try:
            await self.runtime.remove(handle)
        except Exception as e:
            logger.warning(f"Cleanup of {handle.name} failed: {e}")
