import asyncio
import re
import secrets as token_source
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from relay.common.errors import DefinitionError, ExpressionError, LaunchError, NotFoundError
from relay.common.expressions.engine import BindingContext, resolve
from relay.common.models.runs import Event, TriggerInstanceInfo, TriggerStatus
from relay.common.models.workflows import TriggerDefinition
from relay.controller.metadata.service import TRIGGER, MetadataService, Session
from relay.controller.store.database import RunStore
from relay.controller.utils.logger import logger
from relay.controller.workflows.engine import WorkflowManager
from relay.runner.sandbox.executor import build_command, build_env
from relay.runner.sandbox.runtime import ContainerHandle, ContainerRuntime

CONTAINER_NAME_RE = re.compile(r"[^a-zA-Z0-9_.-]")


@dataclass
class TriggerInstance:
    instance_id: str
    workflow_name: str
    trigger_name: str
    definition: TriggerDefinition
    token: str  # registration token, the public half of the webhook URL
    status: TriggerStatus = TriggerStatus.PENDING
    credential: Optional[str] = None
    handle: Optional[ContainerHandle] = None
    address: Optional[str] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    watcher: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"http://{self.address}:{self.definition.port}/"

    def info(self) -> TriggerInstanceInfo:
        return TriggerInstanceInfo(
            instance_id=self.instance_id,
            workflow_name=self.workflow_name,
            trigger_name=self.trigger_name,
            status=self.status,
            webhook_path=f"/webhooks/{self.token}",
            error=self.error,
            created_at=self.created_at,
        )


class TriggerDispatcher:
    """
    Keeps one container per activated trigger declaration and turns the events
    they emit into WorkflowRuns.

    `routes` maps registration token -> TriggerInstance. It is never mutated in
    place: every (de)registration swaps in a new read-only mapping, so a delivery
    that grabbed the current reference sees a consistent table.
    """

    def __init__(self, store: RunStore, metadata: MetadataService, runtime: ContainerRuntime,
                 manager: WorkflowManager, metadata_url: str):
        self.store = store
        self.metadata = metadata
        self.runtime = runtime
        self.manager = manager
        self.metadata_url = metadata_url
        self.routes: Mapping[str, TriggerInstance] = MappingProxyType({})
        self.instances: Dict[str, TriggerInstance] = {}
        self.pending: Dict[str, List[Tuple[TriggerInstance, Event]]] = {}
        self.metadata.event_sink = self.receive_event

    # --- Routing table ---

    def _publish(self, instance: TriggerInstance):
        routes = dict(self.routes)
        routes[instance.token] = instance
        self.routes = MappingProxyType(routes)

    def _unpublish(self, token: str):
        routes = dict(self.routes)
        routes.pop(token, None)
        self.routes = MappingProxyType(routes)

    def lookup(self, token: str) -> Optional[TriggerInstance]:
        return self.routes.get(token)

    # --- Lifecycle ---

    async def activate(self, workflow_name: str) -> List[TriggerInstanceInfo]:
        definition = self.manager.get_definition(workflow_name)
        if definition is None:
            raise KeyError(workflow_name)

        if any(i.workflow_name == workflow_name for i in self.instances.values()):
            await self.deactivate(workflow_name)

        self.store.set_workflow_active(workflow_name, True)
        secrets = self.store.get_secrets(workflow_name)
        started = []
        for trigger in definition.triggers:
            instance = await self._start_instance(workflow_name, trigger, secrets)
            started.append(instance.info())

        logger.info(
            f"Workflow '{workflow_name}' activated with {len(started)} triggers",
            extra={"event": "workflow_activated", "workflow": workflow_name},
        )
        return started

    async def _start_instance(self, workflow_name: str, trigger: TriggerDefinition,
                              secrets: Dict[str, str]) -> TriggerInstance:
        instance = TriggerInstance(
            instance_id=str(uuid.uuid4()),
            workflow_name=workflow_name,
            trigger_name=trigger.name,
            definition=trigger,
            token=token_source.token_urlsafe(24),
        )
        self.instances[instance.instance_id] = instance
        self.store.add_trigger_instance(
            instance.instance_id, workflow_name, trigger.name, instance.token, instance.status.value
        )
        log_extra = {"workflow": workflow_name, "trigger": trigger.name, "instance_id": instance.instance_id}

        try:
            resolved_spec = resolve(trigger.spec, BindingContext(secrets=secrets))
        except ExpressionError as e:
            self._fail(instance, f"resolution: {e}")
            return instance

        instance.credential = self.metadata.issue_credential(Session(
            kind=TRIGGER,
            workflow_name=workflow_name,
            owner_id=instance.instance_id,
            spec=resolved_spec,
            secrets=secrets,
        ))
        env = build_env(
            self.metadata_url, instance.credential, instance.instance_id, trigger.env,
            trigger.input_file, owner_var="RELAY_TRIGGER_INSTANCE_ID",
        )
        env["RELAY_TRIGGER_PORT"] = str(trigger.port)

        try:
            instance.handle = await self.runtime.launch(
                trigger.image, env, build_command(trigger.input, trigger.input_file),
                name=CONTAINER_NAME_RE.sub("-", f"relay-trigger-{workflow_name}-{trigger.name}-{instance.instance_id[:8]}"),
            )
            instance.address = await self.runtime.address(instance.handle)
        except LaunchError as e:
            if instance.handle:
                await self._stop_container(instance)
            self._fail(instance, f"launch ({e.kind}): {e}")
            return instance

        instance.status = TriggerStatus.RUNNING
        self.store.update_trigger_instance(instance.instance_id, instance.status.value)
        self._publish(instance)
        instance.watcher = asyncio.create_task(self._watch(instance))
        logger.info(f"Trigger '{trigger.name}' listening at {instance.url}", extra={"event": "trigger_started", **log_extra})
        return instance

    async def _watch(self, instance: TriggerInstance):
        try:
            exit_code = await self.runtime.wait(instance.handle)
            reason = f"Trigger container exited with code {exit_code}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"Lost trigger container: {e}"

        if instance.status == TriggerStatus.RUNNING:
            self._fail(instance, reason)

    def _fail(self, instance: TriggerInstance, reason: str):
        # The route stays published so deliveries get a 503 rather than a 404
        instance.status = TriggerStatus.FAILED
        instance.error = reason
        self.metadata.revoke_credential(instance.credential)
        self.store.update_trigger_instance(instance.instance_id, instance.status.value, error=reason)
        logger.error(
            f"Trigger '{instance.trigger_name}' of '{instance.workflow_name}' FAILED: {reason}",
            extra={"event": "trigger_failed", "workflow": instance.workflow_name,
                   "trigger": instance.trigger_name, "instance_id": instance.instance_id},
        )

    async def deactivate(self, workflow_name: str) -> int:
        stopped = 0
        for instance in [i for i in self.instances.values() if i.workflow_name == workflow_name]:
            instance.status = TriggerStatus.STOPPED
            self._unpublish(instance.token)
            if instance.watcher:
                instance.watcher.cancel()
            if instance.handle:
                await self._stop_container(instance)
            self.metadata.revoke_credential(instance.credential)
            self.store.update_trigger_instance(instance.instance_id, instance.status.value)
            self.instances.pop(instance.instance_id, None)
            stopped += 1

        self.store.set_workflow_active(workflow_name, False)
        logger.info(
            f"Workflow '{workflow_name}' deactivated, {stopped} triggers stopped",
            extra={"event": "workflow_deactivated", "workflow": workflow_name},
        )
        return stopped

    async def _stop_container(self, instance: TriggerInstance):
        try:
            await self.runtime.kill(instance.handle)
            await self.runtime.remove(instance.handle)
        except Exception as e:
            logger.warning(f"Failed to stop trigger container {instance.handle.name}: {e}")

    async def restore(self) -> List[str]:
        """Relaunches triggers of workflows that were active when the controller stopped."""
        for row in self.store.list_trigger_instances():
            if row["status"] in (TriggerStatus.PENDING.value, TriggerStatus.RUNNING.value):
                self.store.update_trigger_instance(row["instance_id"], TriggerStatus.STOPPED.value)

        restored = []
        for row in self.store.list_workflows():
            if row["active"]:
                await self.activate(row["name"])
                restored.append(row["name"])
        return restored

    async def shutdown(self):
        for workflow_name in {i.workflow_name for i in self.instances.values()}:
            await self.deactivate(workflow_name)

    def list_instances(self, workflow_name: Optional[str] = None) -> List[TriggerInstanceInfo]:
        return [
            i.info() for i in self.instances.values()
            if workflow_name is None or i.workflow_name == workflow_name
        ]

    # --- Events ---

    def begin_delivery(self, delivery_id: str):
        self.pending[delivery_id] = []

    async def end_delivery(self, delivery_id: str, success: bool) -> List[str]:
        """Commits the events emitted during a delivery, or drops them if it failed."""
        held = self.pending.pop(delivery_id, [])
        if not success:
            if held:
                logger.warning(
                    f"Delivery {delivery_id} failed, discarding {len(held)} events",
                    extra={"event": "events_discarded"},
                )
            return []

        run_ids: List[str] = []
        for instance, event in held:
            run_ids.extend(await self._commit(instance, event))
        return run_ids

    async def receive_event(self, session: Session, name: str, parameters: Dict[str, Any],
                            delivery_id: Optional[str] = None) -> List[str]:
        instance = self.instances.get(session.owner_id)
        if instance is None or instance.status != TriggerStatus.RUNNING:
            raise NotFoundError("Trigger instance is not running")

        event = Event(event_id=str(uuid.uuid4()), name=name, parameters=parameters or {}, received_at=time.time())
        if delivery_id and delivery_id in self.pending:
            self.pending[delivery_id].append((instance, event))
            return []
        return await self._commit(instance, event)

    def bind(self, trigger: TriggerDefinition, event: Event) -> Optional[Dict[str, Any]]:
        """Maps an event onto run parameters, or None when the trigger doesn't bind this event."""
        if trigger.events is not None and event.name not in trigger.events:
            return None
        if trigger.binding is None:
            return dict(event.parameters)
        context = BindingContext(event={"id": event.event_id, "name": event.name, "parameters": event.parameters})
        return resolve(trigger.binding, context)

    async def _commit(self, instance: TriggerInstance, event: Event) -> List[str]:
        log_extra = {"workflow": instance.workflow_name, "trigger": instance.trigger_name, "instance_id": instance.instance_id}
        run_ids: List[str] = []
        try:
            parameters = self.bind(instance.definition, event)
            if parameters is None:
                logger.info(f"Event '{event.name}' not bound by trigger '{instance.trigger_name}'", extra=log_extra)
            else:
                run = await self.manager.create_run(
                    instance.workflow_name, parameters,
                    triggered_by=f"trigger:{instance.trigger_name}:{event.event_id}",
                )
                run_ids.append(run.run_id)
        except (ExpressionError, DefinitionError) as e:
            logger.error(f"Event '{event.name}' could not start a run: {e}", extra={"event": "event_rejected", **log_extra})

        self.store.add_event(event.event_id, instance.instance_id, event.name, event.parameters, run_ids, event.received_at)
        logger.info(
            f"Event '{event.name}' from trigger '{instance.trigger_name}' started {len(run_ids)} runs",
            extra={"event": "event_received", **log_extra},
        )
        return run_ids
