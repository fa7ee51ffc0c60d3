import json
import time
import uuid
from typing import Any, Dict, List, Optional

from relay.common.errors import DefinitionError
from relay.common.models.runs import (
    ErrorKind,
    RunResponse,
    RunStatus,
    StepRunResponse,
    StepRunState,
    StepStatus,
    WorkflowRunState,
)
from relay.common.models.workflows import WorkflowDefinition, WorkflowSummary
from relay.controller.scheduler.core import WorkflowScheduler
from relay.controller.store.database import RunStore
from relay.controller.utils.logger import logger
from relay.controller.workflows.graph import validate_definition

LOG_TAIL = 20


class WorkflowManager:
    """Owns workflow definitions and turns run requests into scheduled WorkflowRuns."""

    def __init__(self, scheduler: WorkflowScheduler, store: RunStore):
        self.scheduler = scheduler
        self.store = store

    # --- Definitions ---

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        validate_definition(definition)
        self.store.save_workflow(definition.name, definition.model_dump_json(exclude_unset=True))
        logger.info(
            f"Workflow '{definition.name}' registered ({len(definition.steps)} steps, {len(definition.triggers)} triggers)",
            extra={"event": "workflow_registered", "workflow": definition.name},
        )
        return definition

    def get_definition(self, name: str) -> Optional[WorkflowDefinition]:
        row = self.store.get_workflow(name)
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["definition"])

    def list_workflows(self) -> List[WorkflowSummary]:
        summaries = []
        for row in self.store.list_workflows():
            definition = WorkflowDefinition.model_validate_json(row["definition"])
            summaries.append(self._summary(definition, row))
        return summaries

    def get_summary(self, name: str) -> Optional[WorkflowSummary]:
        row = self.store.get_workflow(name)
        if not row:
            return None
        return self._summary(WorkflowDefinition.model_validate_json(row["definition"]), row)

    def _summary(self, definition: WorkflowDefinition, row: Dict[str, Any]) -> WorkflowSummary:
        return WorkflowSummary(
            name=definition.name,
            description=definition.description,
            steps=[s.name for s in definition.steps],
            triggers=[t.name for t in definition.triggers],
            active=bool(row["active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def set_secret(self, workflow_name: str, name: str, value: str):
        if not self.store.get_workflow(workflow_name):
            raise KeyError(workflow_name)
        self.store.set_secret(workflow_name, name, value)
        logger.info(f"Secret '{name}' set on workflow '{workflow_name}'", extra={"workflow": workflow_name})

    # --- Runs ---

    def bind_parameters(self, definition: WorkflowDefinition, supplied: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Merges declared defaults under the supplied values; required parameters must be present."""
        bound = {name: p.default for name, p in definition.parameters.items() if not p.required}
        bound.update(supplied or {})
        missing = sorted(name for name, p in definition.parameters.items() if p.required and name not in bound)
        if missing:
            raise DefinitionError(f"Missing required parameters for '{definition.name}': {missing}")
        return bound

    async def create_run(self, workflow_name: str, parameters: Optional[Dict[str, Any]] = None,
                         triggered_by: str = "manual") -> WorkflowRunState:
        definition = self.get_definition(workflow_name)
        if definition is None:
            raise KeyError(workflow_name)

        now = time.time()
        run = WorkflowRunState(
            run_id=str(uuid.uuid4()),
            workflow_name=workflow_name,
            parameters=self.bind_parameters(definition, parameters),
            triggered_by=triggered_by,
            steps={
                step.name: StepRunState(step_run_id=str(uuid.uuid4()), step_name=step.name)
                for step in definition.steps
            },
            created_at=now,
            updated_at=now,
        )
        # The run keeps the definition it started with, later edits don't reach it
        self.store.add_run(run, definition.model_dump_json(exclude_unset=True))
        logger.info(
            f"Run {run.run_id} created for '{workflow_name}' by {triggered_by}",
            extra={"event": "run_created", "run_id": run.run_id, "workflow": workflow_name},
        )

        await self.scheduler.submit(run, definition)
        return run

    async def cancel_run(self, run_id: str) -> bool:
        return await self.scheduler.cancel(run_id)

    async def recover(self) -> List[str]:
        """
        Resumes runs left PENDING or RUNNING by a previous controller process. A step
        that was mid-flight lost its container with the process, so it is failed as
        LOST and the usual skip propagation applies to its dependents.
        """
        recovered = []
        for row in self.store.get_unfinished_runs():
            run_id = row["run_id"]
            try:
                definition = WorkflowDefinition.model_validate_json(row["definition"])
                steps = {}
                for step_row in self.store.get_step_runs(run_id):
                    step = StepRunState(
                        step_run_id=step_row["step_run_id"],
                        step_name=step_row["step_name"],
                        status=StepStatus(step_row["status"]),
                        exit_code=step_row["exit_code"],
                        error_kind=ErrorKind(step_row["error_kind"]) if step_row["error_kind"] else None,
                        error=step_row["error"],
                        attempts=step_row["attempts"] or 0,
                        spec=step_row["spec"],
                        started_at=step_row["started_at"],
                        finished_at=step_row["finished_at"],
                    )
                    if step.status == StepStatus.RUNNING:
                        step.status = StepStatus.FAILED
                        step.error_kind = ErrorKind.LOST
                        step.error = "Controller restarted while the step was running"
                        step.finished_at = time.time()
                        self.store.update_step_run(step)
                    elif step.status == StepStatus.RUNNABLE:
                        step.status = StepStatus.PENDING
                        self.store.update_step_run(step)
                    steps[step.step_name] = step

                run = WorkflowRunState(
                    run_id=run_id,
                    workflow_name=row["workflow_name"],
                    status=RunStatus(row["status"]),
                    parameters=json.loads(row["parameters"] or "{}"),
                    triggered_by=row["triggered_by"] or "manual",
                    steps=steps,
                    created_at=row["created_at"],
                    updated_at=time.time(),
                )
                await self.scheduler.submit(run, definition)
                recovered.append(run_id)
                logger.info(f"Recovered run {run_id}", extra={"event": "run_recovered", "run_id": run_id})
            except Exception as e:
                logger.error(f"Failed to recover run {run_id}: {e}", extra={"run_id": run_id})
                self.store.update_run(run_id, RunStatus.FAILED.value, finished_at=time.time())
        return recovered

    def archive_expired(self, retention_seconds: float) -> List[str]:
        archived = self.store.archive_runs(time.time() - retention_seconds)
        if archived:
            logger.info(f"Archived {len(archived)} runs", extra={"event": "runs_archived"})
        return archived

    # --- Views ---

    def get_run(self, run_id: str, log_tail: int = LOG_TAIL) -> Optional[RunResponse]:
        row = self.store.get_run(run_id)
        if not row:
            return None
        steps = [
            StepRunResponse(
                step_name=s["step_name"],
                status=StepStatus(s["status"]),
                exit_code=s["exit_code"],
                error_kind=ErrorKind(s["error_kind"]) if s["error_kind"] else None,
                error=s["error"],
                attempts=s["attempts"] or 0,
                log_tail=self.store.get_logs(s["step_run_id"], tail=log_tail) if log_tail else [],
            )
            for s in self.store.get_step_runs(run_id)
        ]
        return RunResponse(
            run_id=row["run_id"],
            workflow_name=row["workflow_name"],
            status=RunStatus(row["status"]),
            parameters=row["parameters"],
            triggered_by=row["triggered_by"] or "manual",
            steps=steps,
            created_at=row["created_at"],
            finished_at=row["finished_at"],
        )

    def list_runs(self, workflow_name: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return [
            {k: row[k] for k in ("run_id", "workflow_name", "status", "triggered_by", "created_at", "finished_at")}
            for row in self.store.list_runs(workflow_name, limit)
        ]

    def get_step_logs(self, run_id: str, step_name: str, tail: Optional[int] = None) -> Optional[List[Dict[str, Any]]]:
        for s in self.store.get_step_runs(run_id):
            if s["step_name"] == step_name:
                return self.store.get_logs(s["step_run_id"], tail=tail)
        return None
