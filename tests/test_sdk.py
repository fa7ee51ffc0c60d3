import unittest
from unittest.mock import MagicMock, patch

import requests
from typer.testing import CliRunner

from relay.relayctl.cli import app
from relay.sdk.client import NotFound, RelayClient, StepContext


def response(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error", response=resp)
    return resp


class TestRelayClient(unittest.TestCase):
    def setUp(self):
        self.client = RelayClient(url="http://mock-relay/", token="test-token")

    def test_bearer_header(self):
        self.assertEqual(self.client.session.headers["Authorization"], "Bearer test-token")
        self.assertEqual(self.client.url, "http://mock-relay")

    @patch("requests.Session.request")
    def test_run(self, mock_request):
        mock_request.return_value = response({"run_id": "r-1", "status": "PENDING"})

        self.assertEqual(self.client.run("deploy", {"tag": "v1"}), "r-1")
        args, kwargs = mock_request.call_args
        self.assertEqual(args, ("POST", "http://mock-relay/api/workflows/deploy/runs"))
        self.assertEqual(kwargs["json"], {"parameters": {"tag": "v1"}})

    @patch("requests.Session.request")
    def test_list_runs_filters_by_workflow(self, mock_request):
        mock_request.return_value = response({"runs": [{"run_id": "r-1"}]})

        self.assertEqual(self.client.list_runs("deploy", limit=5), [{"run_id": "r-1"}])
        args, kwargs = mock_request.call_args
        self.assertEqual(args, ("GET", "http://mock-relay/api/runs"))
        self.assertEqual(kwargs["params"], {"limit": 5, "workflow": "deploy"})

    @patch("relay.sdk.client.time.sleep")
    @patch("requests.Session.request")
    def test_wait_polls_until_terminal(self, mock_request, mock_sleep):
        mock_request.side_effect = [
            response({"run_id": "r-1", "status": "PENDING"}),
            response({"run_id": "r-1", "status": "RUNNING"}),
            response({"run_id": "r-1", "status": "SUCCEEDED"}),
        ]

        run = self.client.wait("r-1", poll_interval=0.5)
        self.assertEqual(run["status"], "SUCCEEDED")
        self.assertEqual(mock_request.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        args, kwargs = mock_request.call_args
        self.assertEqual(args, ("GET", "http://mock-relay/api/runs/r-1"))

    @patch("requests.Session.request")
    def test_errors_raise(self, mock_request):
        mock_request.return_value = response({"detail": "Run missing not found"}, status_code=404)
        with self.assertRaises(requests.HTTPError):
            self.client.get_run("missing")


class TestStepContext(unittest.TestCase):
    def setUp(self):
        env = {"RELAY_METADATA_URL": "http://relay.test", "RELAY_METADATA_TOKEN": "step-token"}
        with patch.dict("os.environ", env):
            self.context = StepContext()

    def test_credential_from_env(self):
        self.assertEqual(self.context.session.headers["Authorization"], "Bearer step-token")

    @patch("requests.Session.get")
    def test_output(self, mock_get):
        mock_get.return_value = response({"step": "build", "key": "digest", "value": "sha256:1"})

        self.assertEqual(self.context.output("build", "digest"), "sha256:1")
        self.assertEqual(mock_get.call_args[0][0], "http://relay.test/metadata/outputs/build/digest")

    @patch("requests.Session.get")
    def test_missing_output_is_not_found(self, mock_get):
        mock_get.return_value = response({"detail": "No output 'digest' for step 'build'"}, status_code=404)

        with self.assertRaises(NotFound) as ctx:
            self.context.output("build", "digest")
        self.assertIn("digest", str(ctx.exception))
        self.assertIsNone(self.context.output("build", "digest", default=None))
        self.assertEqual(self.context.secret("registry", default=""), "")

    @patch("requests.Session.get")
    def test_other_errors_still_raise(self, mock_get):
        mock_get.return_value = response({"detail": "Invalid or expired metadata credential"}, status_code=401)
        with self.assertRaises(requests.HTTPError):
            self.context.output("build", "digest", default=None)

    @patch("requests.Session.post")
    def test_emit_with_delivery(self, mock_post):
        mock_post.return_value = response({"run_ids": ["r-9"]})

        self.assertEqual(self.context.emit("image-pushed", {"tag": "v1"}, delivery_id="d-1"), ["r-9"])
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "http://relay.test/metadata/events")
        self.assertEqual(kwargs["json"], {"name": "image-pushed", "parameters": {"tag": "v1"}})
        self.assertEqual(kwargs["headers"], {"X-Relay-Delivery": "d-1"})


class TestRelayctl(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()

    @patch("relay.relayctl.cli.RelayClient")
    def test_workflows(self, mock_client):
        mock_client.return_value.list_workflows.return_value = [
            {"name": "deploy", "steps": ["build", "ship"], "triggers": [], "active": True},
        ]
        result = self.runner.invoke(app, ["--url", "http://mock-relay", "--token", "t", "workflows"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("deploy", result.output)
        mock_client.assert_called_with(url="http://mock-relay", token="t")

    @patch("relay.relayctl.cli.RelayClient")
    def test_run_with_params(self, mock_client):
        mock_client.return_value.run.return_value = "r-1"
        result = self.runner.invoke(app, ["run", "deploy", "-p", "tag=v1", "-p", "replicas=3"])

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("r-1", result.output)
        mock_client.return_value.run.assert_called_with("deploy", {"tag": "v1", "replicas": 3})

    @patch("relay.relayctl.cli.RelayClient")
    def test_failed_run_exits_nonzero(self, mock_client):
        mock_client.return_value.run.return_value = "r-1"
        mock_client.return_value.wait.return_value = {
            "workflow_name": "deploy", "run_id": "r-1", "status": "FAILED",
            "steps": [{"step_name": "build", "status": "FAILED", "exit_code": 2, "error": "Exited with code 2",
                       "error_kind": "exit", "log_tail": []}],
        }
        result = self.runner.invoke(app, ["run", "deploy", "--wait"])
        self.assertEqual(result.exit_code, 1)

    def test_bad_param(self):
        result = self.runner.invoke(app, ["run", "deploy", "-p", "novalue"])
        self.assertEqual(result.exit_code, 2)


if __name__ == '__main__':
    unittest.main()
