from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Any, Optional


class ParameterDefinition(BaseModel):
    default: Any = Field(None, description="Value used when the run does not supply one")
    description: Optional[str] = None

    @property
    def required(self) -> bool:
        return "default" not in self.model_fields_set


class ContainerDefinition(BaseModel):
    """Fields shared by steps and triggers: what to run and what it is handed."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Unique name within the workflow")
    image: str = Field(..., description="OCI image reference")
    input: Optional[List[str]] = Field(None, description="Inline shell lines run inside the container")
    input_file: Optional[str] = Field(None, alias="inputFile", description="URL of a script to download and run")
    spec: Dict[str, Any] = Field(default_factory=dict, description="Named inputs, values may contain ${...} expressions")
    env: Dict[str, str] = Field(default_factory=dict)


class StepDefinition(ContainerDefinition):
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    when: List[Any] = Field(default_factory=list, description="Conditions; any falsy value skips the step")
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds")
    retries: int = Field(0, ge=0, description="Scheduler-level relaunch attempts after an execution failure")


class TriggerDefinition(ContainerDefinition):
    port: int = 8080
    events: Optional[List[str]] = Field(None, description="Event names bound by this trigger; None binds all")
    binding: Optional[Dict[str, Any]] = Field(
        None, description="Run parameter -> expression over the `event` namespace"
    )


class WorkflowDefinition(BaseModel):
    name: str
    description: Optional[str] = None
    parameters: Dict[str, ParameterDefinition] = Field(default_factory=dict)
    steps: List[StepDefinition] = Field(..., description="Steps in declaration order")
    triggers: List[TriggerDefinition] = Field(default_factory=list)

    def step(self, name: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.name == name), None)

    def trigger(self, name: str) -> Optional[TriggerDefinition]:
        return next((t for t in self.triggers if t.name == name), None)


class WorkflowSummary(BaseModel):
    name: str
    description: Optional[str] = None
    steps: List[str]
    triggers: List[str]
    active: bool = False
    created_at: float
    updated_at: float
