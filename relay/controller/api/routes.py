from fastapi import APIRouter, HTTPException
from typing import Any, Dict, List, Optional

from relay.common.errors import DefinitionError
from relay.common.models.runs import RunRequest, SecretWrite
from relay.common.models.workflows import WorkflowDefinition
from relay.controller.utils.logger import logger

router = APIRouter(prefix="/api")

# Globals (Injected from main)
workflow_manager = None
dispatcher = None
log_buffers: List[Any] = []


def _workflow_or_404(name: str):
    summary = workflow_manager.get_summary(name)
    if not summary:
        raise HTTPException(status_code=404, detail=f"Workflow '{name}' not found")
    return summary


# --- Workflows ---

@router.post("/workflows", status_code=201)
async def register_workflow(definition: WorkflowDefinition):
    try:
        workflow_manager.register(definition)
    except DefinitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "registered", "workflow": workflow_manager.get_summary(definition.name)}


@router.get("/workflows")
async def list_workflows():
    return {"workflows": workflow_manager.list_workflows()}


@router.get("/workflows/{name}")
async def get_workflow(name: str):
    summary = _workflow_or_404(name)
    definition = workflow_manager.get_definition(name)
    return {
        "summary": summary,
        "definition": definition.model_dump(exclude_unset=True, by_alias=True),
        "secrets": workflow_manager.store.list_secret_names(name),
        "triggers": dispatcher.list_instances(name),
    }


@router.put("/workflows/{name}/secrets/{secret}")
async def set_secret(name: str, secret: str, body: SecretWrite):
    _workflow_or_404(name)
    workflow_manager.set_secret(name, secret, body.value)
    return {"status": "ok", "secret": secret}


@router.post("/workflows/{name}/runs", status_code=202)
async def start_run(name: str, request: RunRequest):
    _workflow_or_404(name)
    try:
        run = await workflow_manager.create_run(name, request.parameters)
    except DefinitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"run_id": run.run_id, "status": run.status}


@router.post("/workflows/{name}/activate")
async def activate_workflow(name: str):
    _workflow_or_404(name)
    instances = await dispatcher.activate(name)
    return {"workflow": name, "triggers": instances}


@router.post("/workflows/{name}/deactivate")
async def deactivate_workflow(name: str):
    _workflow_or_404(name)
    stopped = await dispatcher.deactivate(name)
    return {"workflow": name, "stopped": stopped}


# --- Runs ---

@router.get("/runs")
async def list_runs(workflow: Optional[str] = None, limit: int = 50):
    return {"runs": workflow_manager.list_runs(workflow, limit)}


@router.get("/runs/{run_id}")
async def get_run(run_id: str, tail: int = 20):
    run = workflow_manager.get_run(run_id, log_tail=tail)
    if run:
        return run
    archived = workflow_manager.store.get_archived_run(run_id)
    if archived:
        return {"archived": True, **archived}
    raise HTTPException(status_code=404, detail=f"Run {run_id} not found")


@router.get("/runs/{run_id}/steps/{step}/logs")
async def get_step_logs(run_id: str, step: str, tail: Optional[int] = None):
    logs = workflow_manager.get_step_logs(run_id, step, tail=tail)
    if logs is None:
        raise HTTPException(status_code=404, detail=f"Step '{step}' not found in run {run_id}")
    return {"run_id": run_id, "step": step, "logs": logs}


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    run = workflow_manager.get_run(run_id, log_tail=0)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    if run.status.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run {run_id} already {run.status.value}")

    await workflow_manager.cancel_run(run_id)
    logger.info(f"Cancel requested for run {run_id}", extra={"event": "cancel_requested", "run_id": run_id})
    return {"run_id": run_id, "status": workflow_manager.get_run(run_id, log_tail=0).status}


# --- Triggers & Observability ---

@router.get("/triggers")
async def list_triggers(workflow: Optional[str] = None):
    return {"triggers": dispatcher.list_instances(workflow)}


@router.get("/logs")
async def get_logs(limit: int = 100):
    entries: List[Dict[str, Any]] = []
    for buffer in log_buffers:
        entries.extend(buffer.formatted_buffer)
    entries.sort(key=lambda e: e.get("timestamp", ""))
    return {"logs": entries[-limit:]}
