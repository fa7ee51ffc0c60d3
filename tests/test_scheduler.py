import asyncio
import time
import unittest

from support import Controller, temp_store

from relay.common.errors import DefinitionError
from relay.common.models.runs import ErrorKind, RunStatus, StepRunState, StepStatus, WorkflowRunState
from relay.common.models.workflows import WorkflowDefinition
from relay.controller.metadata.service import REDACTED

WAIT = 5


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = temp_store(self)
        self.controller = Controller(self.store)
        self.runtime = self.controller.runtime
        self.metadata = self.controller.metadata
        self.scheduler = self.controller.scheduler
        self.manager = self.controller.manager
        self.scheduler.start()

    async def asyncTearDown(self):
        await self.scheduler.stop()

    def register(self, steps, parameters=None, name="wf"):
        return self.manager.register(WorkflowDefinition.model_validate({
            "name": name, "parameters": parameters or {}, "steps": steps,
        }))

    async def run_to_end(self, parameters=None, name="wf") -> WorkflowRunState:
        run = await self.manager.create_run(name, parameters)
        return await self.scheduler.wait(run.run_id, timeout=WAIT)

    def statuses(self, state):
        return {name: step.status for name, step in state.steps.items()}


class TestLinearFailure(SchedulerTestCase):
    async def test_failed_step_skips_descendants(self):
        self.runtime.script("killed", exit_code=137)
        self.register([
            {"name": "A", "image": "killed"},
            {"name": "B", "image": "alpine", "dependsOn": ["A"]},
            {"name": "C", "image": "alpine", "dependsOn": ["B"]},
        ])
        state = await self.run_to_end()

        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(self.statuses(state), {"A": StepStatus.FAILED, "B": StepStatus.SKIPPED, "C": StepStatus.SKIPPED})
        self.assertEqual(state.steps["A"].exit_code, 137)
        self.assertEqual(state.steps["A"].error_kind, ErrorKind.EXIT)
        self.assertEqual([l.handle.image for l in self.runtime.launched], ["killed"])

        persisted = {s["step_name"]: s["status"] for s in self.store.get_step_runs(state.run_id)}
        self.assertEqual(persisted, {"A": "FAILED", "B": "SKIPPED", "C": "SKIPPED"})
        self.assertEqual(self.store.get_run(state.run_id)["status"], "FAILED")

    async def test_timeout_behaves_like_failure(self):
        self.runtime.script("slow", hang=True)
        self.register([
            {"name": "A", "image": "slow", "timeoutSeconds": 0.05},
            {"name": "B", "image": "alpine", "spec": {"x": "${outputs.A.result}"}},
        ])
        state = await self.run_to_end()

        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(state.steps["A"].error_kind, ErrorKind.TIMEOUT)
        self.assertEqual(state.steps["B"].status, StepStatus.SKIPPED)
        self.assertEqual(self.runtime.killed, ["c1"])

    async def test_launch_failure(self):
        self.runtime.script("ghcr.io/nope", launch_error="pull access denied")
        self.register([
            {"name": "A", "image": "ghcr.io/nope"},
            {"name": "B", "image": "alpine", "dependsOn": ["A"]},
        ])
        state = await self.run_to_end()
        self.assertEqual(state.steps["A"].error_kind, ErrorKind.LAUNCH)
        self.assertEqual(state.steps["B"].status, StepStatus.SKIPPED)
        self.assertEqual(state.status, RunStatus.FAILED)

    async def test_unresolvable_spec_fails_without_launch(self):
        self.register([{"name": "A", "image": "alpine", "spec": {"k": "${secrets.missing}"}}])
        state = await self.run_to_end()
        self.assertEqual(state.steps["A"].status, StepStatus.FAILED)
        self.assertEqual(state.steps["A"].error_kind, ErrorKind.RESOLUTION)
        self.assertEqual(self.runtime.launched, [])


class TestConcurrencyAndData(SchedulerTestCase):
    async def test_independent_steps_run_concurrently(self):
        running = set()
        overlap = []

        async def work(env):
            running.add(env["RELAY_STEP_RUN_ID"])
            await asyncio.sleep(0.05)
            overlap.append(len(running))

        self.runtime.script("x", action=work)
        self.runtime.script("y", action=work)
        self.register([{"name": "X", "image": "x"}, {"name": "Y", "image": "y"}])
        state = await self.run_to_end()

        self.assertEqual(state.status, RunStatus.SUCCEEDED)
        self.assertEqual(max(overlap), 2)

    async def test_outputs_flow_downstream(self):
        seen = {}

        async def build(env):
            await self.metadata.set_output(env["RELAY_METADATA_TOKEN"], "digest", "sha256:abc")
            await self.metadata.set_output(env["RELAY_METADATA_TOKEN"], "meta", {"layers": 3})

        async def deploy(env):
            token = env["RELAY_METADATA_TOKEN"]
            seen["spec"] = self.metadata.get_spec(token)
            seen["meta"] = self.metadata.get_output(token, "build", "meta")

        self.runtime.script("builder", action=build)
        self.runtime.script("deployer", action=deploy)
        self.register(
            [
                {"name": "build", "image": "builder"},
                {"name": "deploy", "image": "deployer",
                 "spec": {"image": "registry/app@${outputs.build.digest}", "env": "${parameters.env}"}},
            ],
            parameters={"env": {"default": "staging"}},
        )
        state = await self.run_to_end()

        self.assertEqual(state.status, RunStatus.SUCCEEDED)
        self.assertEqual(seen["spec"], {"image": "registry/app@sha256:abc", "env": "staging"})
        self.assertEqual(seen["meta"], {"layers": 3})

    async def test_concurrent_runs_are_isolated(self):
        async def produce(env):
            token = env["RELAY_METADATA_TOKEN"]
            spec = self.metadata.get_spec(token)
            await self.metadata.set_output(token, "value", spec["n"])

        self.runtime.script("producer", action=produce)
        self.register([{"name": "p", "image": "producer", "spec": {"n": "${parameters.n}"}}], parameters={"n": {}})

        runs = await asyncio.gather(*[self.manager.create_run("wf", {"n": i}) for i in range(5)])
        for i, run in enumerate(runs):
            state = await self.scheduler.wait(run.run_id, timeout=WAIT)
            self.assertEqual(state.status, RunStatus.SUCCEEDED)
            self.assertEqual(self.store.get_outputs(run.run_id), {"p": {"value": i}})

    async def test_secrets_never_persist_in_clear(self):
        async def leak(env):
            token = env["RELAY_METADATA_TOKEN"]
            key = self.metadata.get_secret(token, "api_key")
            await self.metadata.set_output(token, "echo", f"key={key}")
            await self.metadata.append_log(token, "info", f"calling with {key}")

        self.runtime.script("leaky", action=leak)
        self.register([{"name": "s", "image": "leaky", "spec": {"auth": "${secrets.api_key}"}}])
        self.manager.set_secret("wf", "api_key", "sk-live-0001")
        state = await self.run_to_end()

        self.assertEqual(state.status, RunStatus.SUCCEEDED)
        self.assertEqual(self.store.get_output(state.run_id, "s", "echo"), {"value": f"key={REDACTED}"})
        step_row = self.store.get_step_runs(state.run_id)[0]
        self.assertEqual(step_row["spec"], {"auth": REDACTED})
        self.assertEqual(self.store.get_logs(step_row["step_run_id"])[0]["message"], f"calling with {REDACTED}")
        self.assertEqual(len(self.store.get_secret_access(state.run_id)), 1)

    async def test_credentials_revoked_after_completion(self):
        self.register([{"name": "a", "image": "alpine"}])
        await self.run_to_end()
        self.assertEqual(self.metadata.sessions, {})


class TestPolicies(SchedulerTestCase):
    async def test_cancel_run(self):
        self.runtime.script("slow", hang=True)
        self.register([
            {"name": "fast", "image": "alpine"},
            {"name": "slow", "image": "slow"},
            {"name": "after", "image": "alpine", "dependsOn": ["slow"]},
        ])
        run = await self.manager.create_run("wf")
        for _ in range(100):
            if self.scheduler.get_state(run.run_id).steps["fast"].status == StepStatus.SUCCEEDED:
                break
            await asyncio.sleep(0.01)

        self.assertTrue(await self.scheduler.cancel(run.run_id))
        state = await self.scheduler.wait(run.run_id, timeout=WAIT)

        self.assertEqual(state.status, RunStatus.CANCELED)
        self.assertEqual(self.statuses(state), {
            "fast": StepStatus.SUCCEEDED, "slow": StepStatus.CANCELED, "after": StepStatus.CANCELED,
        })
        self.assertEqual(self.runtime.killed, [self.runtime.launches_of("slow")[0].handle.container_id])
        self.assertEqual(self.metadata.sessions, {})
        self.assertFalse(await self.scheduler.cancel(run.run_id))

    async def test_when_condition_skips_optional_branch(self):
        self.register(
            [
                {"name": "build", "image": "alpine"},
                {"name": "publish", "image": "alpine", "dependsOn": ["build"], "when": ["${parameters.publish}"]},
                {"name": "announce", "image": "alpine", "dependsOn": ["publish"]},
            ],
            parameters={"publish": {"default": False}},
        )
        state = await self.run_to_end()
        self.assertEqual(state.status, RunStatus.SUCCEEDED)
        self.assertEqual(state.steps["publish"].status, StepStatus.SKIPPED)
        self.assertEqual(state.steps["announce"].status, StepStatus.SKIPPED)

        state = await self.run_to_end({"publish": "yes"})
        self.assertEqual(set(self.statuses(state).values()), {StepStatus.SUCCEEDED})

    async def test_retries(self):
        attempts = []

        async def flaky(env):
            attempts.append(env["RELAY_STEP_RUN_ID"])
            if len(attempts) < 3:
                raise RuntimeError("transient")

        self.runtime.script("flaky", action=flaky)
        self.register([{"name": "f", "image": "flaky", "retries": 2}])
        state = await self.run_to_end()

        self.assertEqual(state.status, RunStatus.SUCCEEDED)
        self.assertEqual(state.steps["f"].attempts, 3)
        self.assertEqual(len(set(attempts)), 1)

    async def test_retries_exhausted(self):
        self.runtime.script("broken", exit_code=2)
        self.register([{"name": "f", "image": "broken", "retries": 1}])
        state = await self.run_to_end()
        self.assertEqual(state.status, RunStatus.FAILED)
        self.assertEqual(state.steps["f"].attempts, 2)

    async def test_missing_required_parameter(self):
        self.register([{"name": "a", "image": "alpine", "spec": {"v": "${parameters.v}"}}], parameters={"v": {}})
        with self.assertRaises(DefinitionError):
            await self.manager.create_run("wf", {})
        self.assertEqual(self.store.list_runs(), [])


class TestRecovery(unittest.IsolatedAsyncioTestCase):
    async def test_in_flight_steps_are_lost_and_graph_resumes(self):
        store = temp_store(self)
        first = Controller(store)
        definition = first.manager.register(WorkflowDefinition.model_validate({
            "name": "wf",
            "steps": [
                {"name": "a", "image": "alpine"},
                {"name": "b", "image": "alpine", "dependsOn": ["a"]},
                {"name": "c", "image": "alpine"},
            ],
        }))

        # What a controller that died mid-run leaves behind
        now = time.time()
        state = WorkflowRunState(
            run_id="run-crashed", workflow_name="wf", status=RunStatus.RUNNING,
            steps={n: StepRunState(step_run_id=f"sr-{n}", step_name=n) for n in ("a", "b", "c")},
            created_at=now, updated_at=now,
        )
        state.steps["a"].status = StepStatus.RUNNING
        store.add_run(state, definition.model_dump_json(exclude_unset=True))

        second = Controller(store)
        second.scheduler.start()
        try:
            self.assertEqual(await second.manager.recover(), ["run-crashed"])
            final = await second.scheduler.wait("run-crashed", timeout=WAIT)
        finally:
            await second.scheduler.stop()

        self.assertEqual(final.status, RunStatus.FAILED)
        self.assertEqual(final.steps["a"].error_kind, ErrorKind.LOST)
        self.assertEqual(final.steps["b"].status, StepStatus.SKIPPED)
        self.assertEqual(final.steps["c"].status, StepStatus.SUCCEEDED)


if __name__ == '__main__':
    unittest.main()
