import time
import unittest

from support import temp_store

from relay.common.models.runs import ErrorKind, StepRunState, StepStatus, WorkflowRunState


def make_run(run_id="run-1", steps=("a", "b")):
    now = time.time()
    return WorkflowRunState(
        run_id=run_id,
        workflow_name="wf",
        parameters={"x": 1},
        steps={name: StepRunState(step_run_id=f"{run_id}-{name}", step_name=name) for name in steps},
        created_at=now,
        updated_at=now,
    )


class TestRunStore(unittest.TestCase):
    def setUp(self):
        self.store = temp_store(self)

    def test_workflow_upsert_and_activation(self):
        self.store.save_workflow("wf", '{"name": "wf", "steps": []}')
        self.store.save_workflow("wf", '{"name": "wf", "steps": [], "description": "v2"}')
        self.assertEqual(len(self.store.list_workflows()), 1)
        self.assertIn("v2", self.store.get_workflow("wf")["definition"])

        self.store.set_workflow_active("wf", True)
        self.assertEqual(self.store.get_workflow("wf")["active"], 1)
        self.assertIsNone(self.store.get_workflow("missing"))

    def test_secrets_are_scoped_per_workflow(self):
        self.store.set_secret("wf", "token", "one")
        self.store.set_secret("wf", "token", "two")
        self.store.set_secret("other", "token", "three")
        self.assertEqual(self.store.get_secrets("wf"), {"token": "two"})
        self.assertEqual(self.store.list_secret_names("other"), ["token"])

    def test_run_and_step_lifecycle(self):
        run = make_run()
        self.store.add_run(run, "{}")
        self.assertEqual(self.store.get_run("run-1")["parameters"], {"x": 1})
        self.assertEqual([r["run_id"] for r in self.store.get_unfinished_runs()], ["run-1"])

        step = run.steps["a"]
        step.status = StepStatus.FAILED
        step.error_kind = ErrorKind.EXIT
        step.exit_code = 3
        step.spec = {"k": "v"}
        self.store.update_step_run(step)
        rows = {r["step_name"]: r for r in self.store.get_step_runs("run-1")}
        self.assertEqual(rows["a"]["status"], "FAILED")
        self.assertEqual(rows["a"]["error_kind"], "exit")
        self.assertEqual(rows["a"]["spec"], {"k": "v"})
        self.assertEqual(rows["b"]["status"], "PENDING")

        self.store.update_run("run-1", "FAILED", finished_at=time.time())
        self.assertEqual(self.store.get_unfinished_runs(), [])

    def test_outputs_overwrite_and_null(self):
        self.store.set_output("run-1", "a", "k", {"v": 1})
        self.store.set_output("run-1", "a", "k", [1, 2])
        self.store.set_output("run-1", "a", "empty", None)
        self.store.set_output("run-2", "a", "k", "other run")

        self.assertEqual(self.store.get_output("run-1", "a", "k"), {"value": [1, 2]})
        self.assertEqual(self.store.get_output("run-1", "a", "empty"), {"value": None})
        self.assertIsNone(self.store.get_output("run-1", "a", "missing"))
        self.assertEqual(self.store.get_outputs("run-1"), {"a": {"k": [1, 2], "empty": None}})

    def test_log_tail_keeps_order(self):
        for i in range(5):
            self.store.append_log("sr-1", "info", f"line {i}")
        self.assertEqual([l["message"] for l in self.store.get_logs("sr-1")], [f"line {i}" for i in range(5)])
        self.assertEqual([l["message"] for l in self.store.get_logs("sr-1", tail=2)], ["line 3", "line 4"])

    def test_archive_moves_old_terminal_runs(self):
        old, fresh = make_run("old"), make_run("fresh")
        self.store.add_run(old, "{}")
        self.store.add_run(fresh, "{}")
        self.store.set_output("old", "a", "k", 1)
        self.store.append_log("old-a", "info", "hello")
        self.store.update_run("old", "SUCCEEDED", finished_at=time.time() - 100)
        self.store.update_run("fresh", "SUCCEEDED", finished_at=time.time())

        archived = self.store.archive_runs(time.time() - 50)

        self.assertEqual(archived, ["old"])
        self.assertIsNone(self.store.get_run("old"))
        self.assertEqual(self.store.get_step_runs("old"), [])
        self.assertIsNone(self.store.get_output("old", "a", "k"))
        self.assertIsNotNone(self.store.get_run("fresh"))

        snapshot = self.store.get_archived_run("old")["snapshot"]
        self.assertEqual(snapshot["run"]["run_id"], "old")
        self.assertEqual(len(snapshot["steps"]), 2)
        logs = {s["step_name"]: s["logs"] for s in snapshot["steps"]}
        self.assertEqual(logs["a"][0]["message"], "hello")

    def test_trigger_instances_and_events(self):
        self.store.add_trigger_instance("i1", "wf", "hook", "tok", "PENDING")
        self.store.update_trigger_instance("i1", "FAILED", error="boom")
        self.store.update_trigger_instance("i1", "STOPPED")
        row = self.store.list_trigger_instances("wf")[0]
        self.assertEqual(row["status"], "STOPPED")
        self.assertEqual(row["error"], "boom")

        self.store.add_event("e1", "i1", "push", {"ref": "main"}, ["run-1"], time.time())
        events = self.store.get_events("i1")
        self.assertEqual(events[0]["parameters"], {"ref": "main"})
        self.assertEqual(events[0]["run_ids"], ["run-1"])


if __name__ == '__main__':
    unittest.main()
