import asyncio
import unittest

from support import METADATA_URL, FakeRuntime

from relay.common.errors import LaunchError
from relay.common.models.runs import ErrorKind, StepStatus
from relay.runner.sandbox.executor import StepExecutor, StepLaunch, build_command, build_env


class TestLaunchWiring(unittest.TestCase):
    def test_inline_input(self):
        self.assertEqual(build_command(["echo a", "echo b"]), ["/bin/sh", "-c", "echo a\necho b"])

    def test_input_file(self):
        command = build_command(input_file="https://example.com/run.sh")
        self.assertEqual(command[:2], ["/bin/sh", "-c"])
        self.assertIn("https://example.com/run.sh", command[2])
        self.assertIsNone(build_command())

    def test_env(self):
        env = build_env(METADATA_URL, "tok", "sr-1", {"EXTRA": "1", "RELAY_METADATA_TOKEN": "spoof"}, "https://x/s.sh")
        self.assertEqual(env["RELAY_METADATA_TOKEN"], "tok")
        self.assertEqual(env["RELAY_STEP_RUN_ID"], "sr-1")
        self.assertEqual(env["RELAY_INPUT_FILE"], "https://x/s.sh")
        self.assertEqual(env["EXTRA"], "1")


class TestStepExecutor(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.runtime = FakeRuntime()
        self.executor = StepExecutor(self.runtime, METADATA_URL)

    def launch(self, image="alpine", **kwargs):
        return StepLaunch(step_run_id="sr-1", image=image, token="tok", **kwargs)

    async def test_success(self):
        result = await self.executor.run(self.launch(input=["true"]))
        self.assertEqual(result.status, StepStatus.SUCCEEDED)
        self.assertEqual(result.exit_code, 0)
        launched = self.runtime.launched[0]
        self.assertEqual(launched.env["RELAY_METADATA_URL"], METADATA_URL)
        self.assertEqual(launched.command, ["/bin/sh", "-c", "true"])
        self.assertEqual(self.runtime.removed, [launched.handle.container_id])

    async def test_nonzero_exit(self):
        self.runtime.script("broken", exit_code=3)
        result = await self.executor.run(self.launch("broken"))
        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(result.error_kind, ErrorKind.EXIT)
        self.assertEqual(result.exit_code, 3)

    async def test_launch_error(self):
        self.runtime.script("missing:latest", launch_error="manifest unknown")
        result = await self.executor.run(self.launch("missing:latest"))
        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(result.error_kind, ErrorKind.LAUNCH)
        self.assertTrue(result.error.startswith(LaunchError.IMAGE_PULL))
        self.assertEqual(self.runtime.launched, [])

    async def test_timeout_kills_container(self):
        self.runtime.script("slow", hang=True)
        result = await self.executor.run(self.launch("slow", timeout_seconds=0.05))
        self.assertEqual(result.status, StepStatus.FAILED)
        self.assertEqual(result.error_kind, ErrorKind.TIMEOUT)
        self.assertEqual(self.runtime.killed, ["c1"])

    async def test_cancellation_kills_container(self):
        self.runtime.script("slow", hang=True)
        task = asyncio.create_task(self.executor.run(self.launch("slow")))
        await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.runtime.killed, ["c1"])

    async def test_cancellation_during_launch_discards_container(self):
        self.runtime.script("heavy", launch_delay=5)
        task = asyncio.create_task(self.executor.run(self.launch("heavy", name="relay-run-build-1")))
        await asyncio.sleep(0.01)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(self.runtime.launched, [])
        self.assertEqual(self.runtime.discarded, ["relay-run-build-1"])


if __name__ == '__main__':
    unittest.main()
