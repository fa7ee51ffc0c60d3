from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Dict, Any, Optional


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNABLE = "RUNNABLE"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELED)


class ErrorKind(str, Enum):
    LAUNCH = "launch"
    EXIT = "exit"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    RESOLUTION = "resolution"
    LOST = "lost"


class TriggerStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


class StepRunState(BaseModel):
    step_run_id: str
    step_name: str
    status: StepStatus = StepStatus.PENDING
    exit_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    attempts: int = 0
    spec: Dict[str, Any] = Field(default_factory=dict, description="Resolved spec with secret values redacted")
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class WorkflowRunState(BaseModel):
    run_id: str
    workflow_name: str
    status: RunStatus = RunStatus.PENDING
    parameters: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "manual"
    steps: Dict[str, StepRunState] = Field(default_factory=dict)
    created_at: float
    updated_at: float
    finished_at: Optional[float] = None


class Event(BaseModel):
    event_id: str
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    received_at: float


# --- API payloads ---

class RunRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict)


class StepRunResponse(BaseModel):
    step_name: str
    status: StepStatus
    exit_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    attempts: int = 0
    log_tail: List[Dict[str, Any]] = Field(default_factory=list)


class RunResponse(BaseModel):
    run_id: str
    workflow_name: str
    status: RunStatus
    parameters: Dict[str, Any]
    triggered_by: str
    steps: List[StepRunResponse]
    created_at: float
    finished_at: Optional[float] = None


class OutputWrite(BaseModel):
    value: Any


class LogWrite(BaseModel):
    level: str = "info"
    message: str


class EventEmit(BaseModel):
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class SecretWrite(BaseModel):
    value: str


class TriggerInstanceInfo(BaseModel):
    instance_id: str
    workflow_name: str
    trigger_name: str
    status: TriggerStatus
    webhook_path: Optional[str] = None
    error: Optional[str] = None
    created_at: float
