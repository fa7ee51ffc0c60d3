import asyncio
import collections
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from relay.common.errors import ExpressionError
from relay.common.expressions.engine import BindingContext, is_truthy, resolve
from relay.common.models.runs import ErrorKind, RunStatus, StepStatus, WorkflowRunState
from relay.common.models.workflows import WorkflowDefinition
from relay.controller.metadata.service import STEP, MetadataService, Session, redact
from relay.controller.store.database import RunStore
from relay.controller.utils.logger import logger
from relay.controller.workflows.graph import (
    Graph,
    aggregate_status,
    build_graph,
    propagate_skips,
    runnable_steps,
)
from relay.runner.sandbox.executor import StepExecutor, StepLaunch, StepResult

FINISHED_HISTORY = 1000
CONTAINER_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]")


@dataclass
class StepCompletion:
    run_id: str
    step_name: str
    result: Optional[StepResult]  # None when the step task was cancelled


@dataclass
class ActiveRun:
    state: WorkflowRunState
    definition: WorkflowDefinition
    graph: Graph
    tasks: Dict[str, asyncio.Task] = field(default_factory=dict)
    tokens: Dict[str, str] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    canceled: bool = False


class WorkflowScheduler:
    """
    Drives each run's step graph. Steps whose dependencies have all succeeded are
    dispatched concurrently as tasks; each task reports back on the completion
    queue and `run()` applies the transition, propagates skips and dispatches the
    next frontier. Nothing blocks on a container directly.
    """

    def __init__(self, store: RunStore, metadata: MetadataService, executor: StepExecutor):
        self.store = store
        self.metadata = metadata
        self.executor = executor
        self.completions: asyncio.Queue = asyncio.Queue()
        self.runs: Dict[str, ActiveRun] = {}
        self.finished: "collections.OrderedDict[str, WorkflowRunState]" = collections.OrderedDict()
        self._loop_task: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    def start(self):
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run())

    async def stop(self):
        for active in list(self.runs.values()):
            for task in active.tasks.values():
                task.cancel()
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def run(self):
        logger.info("Workflow scheduler started.")
        while True:
            completion = await self.completions.get()
            try:
                await self._handle_completion(completion)
            except Exception:
                logger.exception(f"Failed to process completion of {completion.run_id}:{completion.step_name}")
            finally:
                self.completions.task_done()

    # --- Public API ---

    async def submit(self, state: WorkflowRunState, definition: WorkflowDefinition):
        """Starts (or resumes, for recovered runs) dispatch of a run's steps."""
        active = ActiveRun(state=state, definition=definition, graph=build_graph(definition))
        self.runs[state.run_id] = active

        if state.status == RunStatus.PENDING:
            state.status = RunStatus.RUNNING
            self._persist_run(state)
        logger.info(
            f"Run {state.run_id} of '{state.workflow_name}' scheduled with {len(state.steps)} steps",
            extra={"event": "run_started", "run_id": state.run_id, "workflow": state.workflow_name},
        )
        await self._advance(active)

    async def cancel(self, run_id: str) -> bool:
        active = self.runs.get(run_id)
        if not active:
            return False

        active.canceled = True
        now = time.time()
        for step in active.state.steps.values():
            if not step.status.is_terminal:
                step.status = StepStatus.CANCELED
                step.error_kind = ErrorKind.CANCELED
                step.error = "Run canceled"
                step.finished_at = now
                self.store.update_step_run(step)

        tasks = list(active.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            # Let the executors kill their containers before reporting back
            await asyncio.gather(*tasks, return_exceptions=True)
        for name in list(active.tokens):
            self.metadata.revoke_credential(active.tokens.pop(name))

        logger.warning(f"Run {run_id} canceled", extra={"event": "run_canceled", "run_id": run_id})
        self._finish_if_done(active)
        return True

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[WorkflowRunState]:
        active = self.runs.get(run_id)
        if active:
            await asyncio.wait_for(active.done.wait(), timeout=timeout)
            return active.state
        return self.finished.get(run_id)

    def get_state(self, run_id: str) -> Optional[WorkflowRunState]:
        active = self.runs.get(run_id)
        if active:
            return active.state
        return self.finished.get(run_id)

    # --- State machine ---

    async def _advance(self, active: ActiveRun):
        """Recomputes the frontier until no more synchronous transitions happen."""
        state = active.state
        changed = True
        while changed and not active.canceled:
            changed = False
            statuses = {name: step.status for name, step in state.steps.items()}

            propagated = propagate_skips(statuses, active.graph)
            for name, status in propagated.items():
                if status == StepStatus.SKIPPED and statuses[name] != StepStatus.SKIPPED:
                    self._mark_skipped(state, name, "An upstream step failed or was skipped")
                    changed = True
            if changed:
                continue

            for name in runnable_steps(propagated, active.graph):
                if self._dispatch(active, name):
                    continue
                changed = True

        self._finish_if_done(active)

    def _binding_context(self, state: WorkflowRunState) -> BindingContext:
        return BindingContext(
            parameters=state.parameters,
            outputs=self.store.get_outputs(state.run_id),
            secrets=self.store.get_secrets(state.workflow_name),
        )

    def _dispatch(self, active: ActiveRun, name: str) -> bool:
        """
        Resolves and launches one step. Returns False when the step instead ended
        synchronously (condition not met, or its spec could not be resolved).
        """
        state = active.state
        step = state.steps[name]
        step_def = active.definition.step(name)
        context = self._binding_context(state)

        try:
            if step_def.when and not all(is_truthy(resolve(c, context)) for c in step_def.when):
                self._mark_skipped(state, name, "Condition not met")
                return False
            resolved_spec = resolve(step_def.spec, context)
        except ExpressionError as e:
            step.status = StepStatus.FAILED
            step.error_kind = ErrorKind.RESOLUTION
            step.error = str(e)
            step.finished_at = time.time()
            self.store.update_step_run(step)
            logger.warning(
                f"Run {state.run_id}: step '{name}' could not be resolved: {e}",
                extra={"event": "step_failed", "run_id": state.run_id, "step": name},
            )
            return False

        step.status = StepStatus.RUNNABLE
        step.spec, _ = redact(resolved_spec, context.secrets.values())
        self.store.update_step_run(step)

        token = self.metadata.issue_credential(Session(
            kind=STEP,
            workflow_name=state.workflow_name,
            owner_id=step.step_run_id,
            spec=resolved_spec,
            secrets=context.secrets,
            run_id=state.run_id,
            step_name=name,
        ))
        active.tokens[name] = token

        step.attempts += 1
        step.exit_code = None
        step.error_kind = None
        step.error = None
        launch = StepLaunch(
            step_run_id=step.step_run_id,
            image=step_def.image,
            token=token,
            input=step_def.input,
            input_file=step_def.input_file,
            env=step_def.env,
            timeout_seconds=step_def.timeout_seconds,
            name=CONTAINER_NAME_RE.sub("-", f"relay-{state.run_id[:8]}-{name}-{step.attempts}"),
        )

        step.status = StepStatus.RUNNING
        step.started_at = time.time()
        step.finished_at = None
        self.store.update_step_run(step)
        logger.info(
            f"Run {state.run_id}: launching step '{name}' ({step_def.image}), attempt {step.attempts}",
            extra={"event": "step_launched", "run_id": state.run_id, "step": name},
        )
        active.tasks[name] = asyncio.create_task(self._execute(state.run_id, name, launch))
        return True

    async def _execute(self, run_id: str, step_name: str, launch: StepLaunch):
        try:
            result = await self.executor.run(launch)
        except asyncio.CancelledError:
            self.completions.put_nowait(StepCompletion(run_id, step_name, None))
            raise
        except Exception as e:
            logger.exception(f"Executor crashed on {run_id}:{step_name}")
            result = StepResult(
                step_run_id=launch.step_run_id, status=StepStatus.FAILED,
                error_kind=ErrorKind.LAUNCH, error=str(e),
            )
        self.completions.put_nowait(StepCompletion(run_id, step_name, result))

    async def _handle_completion(self, completion: StepCompletion):
        active = self.runs.get(completion.run_id)
        if not active:
            return
        active.tasks.pop(completion.step_name, None)
        self.metadata.revoke_credential(active.tokens.pop(completion.step_name, None))

        state = active.state
        step = state.steps[completion.step_name]
        result = completion.result
        if result is None or step.status.is_terminal:
            self._finish_if_done(active)
            return

        step.exit_code = result.exit_code
        step.error_kind = result.error_kind
        step.error = result.error
        step.finished_at = time.time()

        if result.status == StepStatus.SUCCEEDED:
            step.status = StepStatus.SUCCEEDED
            logger.info(
                f"Run {state.run_id}: step '{step.step_name}' succeeded",
                extra={"event": "step_succeeded", "run_id": state.run_id, "step": step.step_name},
            )
        else:
            retries = active.definition.step(step.step_name).retries
            if step.attempts <= retries and not active.canceled:
                step.status = StepStatus.PENDING
                logger.warning(
                    f"Run {state.run_id}: step '{step.step_name}' failed ({result.error}), "
                    f"retrying ({step.attempts}/{retries})",
                    extra={"event": "step_retry", "run_id": state.run_id, "step": step.step_name},
                )
            else:
                step.status = StepStatus.FAILED
                logger.warning(
                    f"Run {state.run_id}: step '{step.step_name}' FAILED [{result.error_kind.value if result.error_kind else '-'}]: {result.error}",
                    extra={"event": "step_failed", "run_id": state.run_id, "step": step.step_name},
                )

        self.store.update_step_run(step)
        await self._advance(active)

    def _mark_skipped(self, state: WorkflowRunState, name: str, reason: str):
        step = state.steps[name]
        step.status = StepStatus.SKIPPED
        step.error = reason
        step.finished_at = time.time()
        self.store.update_step_run(step)
        logger.info(
            f"Run {state.run_id}: step '{name}' skipped ({reason})",
            extra={"event": "step_skipped", "run_id": state.run_id, "step": name},
        )

    def _finish_if_done(self, active: ActiveRun):
        state = active.state
        if active.tasks and not active.canceled:
            return
        statuses = {name: step.status for name, step in state.steps.items()}
        status = aggregate_status(statuses, canceled=active.canceled)
        if not status.is_terminal or state.run_id not in self.runs:
            return

        state.status = status
        state.finished_at = time.time()
        self._persist_run(state)
        self.runs.pop(state.run_id, None)
        self.finished[state.run_id] = state
        while len(self.finished) > FINISHED_HISTORY:
            self.finished.popitem(last=False)
        active.done.set()
        logger.info(
            f"Run {state.run_id} transition to {status.value}",
            extra={"event": "run_finished", "run_id": state.run_id, "workflow": state.workflow_name},
        )

    def _persist_run(self, state: WorkflowRunState):
        state.updated_at = time.time()
        self.store.update_run(state.run_id, state.status.value, finished_at=state.finished_at)
