import os
import time
from typing import Any, Dict, List, Optional

import requests

TERMINAL_STATUSES = {"SUCCEEDED", "FAILED", "CANCELED"}
_MISSING = object()


class NotFound(LookupError):
    """The metadata API has no output or secret under that name."""


class RelayClient:
    """
    Operator client for the Relay controller admin API.
    Errors from the controller surface as requests.HTTPError.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, timeout: float = 10):
        self.url = (url or os.getenv("RELAY_URL", "http://localhost:8080")).rstrip("/")
        self.token = token or os.getenv("RELAY_API_TOKEN", "default-insecure-token")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {self.token}"})

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        resp = self.session.request(method, f"{self.url}{path}", timeout=self.timeout, **kwargs)
        resp.raise_for_status()
        return resp.json()

    # --- Workflows ---

    def register(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/workflows", json=definition)

    def list_workflows(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/workflows")["workflows"]

    def get_workflow(self, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/workflows/{name}")

    def set_secret(self, workflow: str, name: str, value: str) -> Dict[str, Any]:
        return self._request("PUT", f"/api/workflows/{workflow}/secrets/{name}", json={"value": value})

    def activate(self, workflow: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/workflows/{workflow}/activate")

    def deactivate(self, workflow: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/workflows/{workflow}/deactivate")

    # --- Runs ---

    def run(self, workflow: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        return self._request("POST", f"/api/workflows/{workflow}/runs", json={"parameters": parameters or {}})["run_id"]

    def list_runs(self, workflow: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if workflow:
            params["workflow"] = workflow
        return self._request("GET", "/api/runs", params=params)["runs"]

    def get_run(self, run_id: str, tail: int = 20) -> Dict[str, Any]:
        return self._request("GET", f"/api/runs/{run_id}", params={"tail": tail})

    def get_step_logs(self, run_id: str, step: str, tail: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {"tail": tail} if tail else {}
        return self._request("GET", f"/api/runs/{run_id}/steps/{step}/logs", params=params)["logs"]

    def cancel(self, run_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/api/runs/{run_id}/cancel")

    def wait(self, run_id: str, poll_interval: float = 1.0, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Polls until the run reaches a terminal status."""
        deadline = time.time() + timeout if timeout else None
        while True:
            run = self.get_run(run_id, tail=0)
            if run.get("status") in TERMINAL_STATUSES:
                return run
            if deadline and time.time() > deadline:
                raise TimeoutError(f"Run {run_id} still {run.get('status')} after {timeout}s")
            time.sleep(poll_interval)

    # --- Cluster ---

    def list_triggers(self, workflow: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"workflow": workflow} if workflow else {}
        return self._request("GET", "/api/triggers", params=params)["triggers"]

    def controller_logs(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/logs", params={"limit": limit})["logs"]

    def health(self) -> Dict[str, Any]:
        resp = self.session.get(f"{self.url}/health", timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()


class StepContext:
    """
    Helper for code running inside a step or trigger container. Reads its
    credential from the environment the controller injected at launch.
    """

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, timeout: float = 10):
        self.url = (url or os.environ["RELAY_METADATA_URL"]).rstrip("/")
        self.token = token or os.environ["RELAY_METADATA_TOKEN"]
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {self.token}"})

    def _get(self, path: str) -> Dict[str, Any]:
        resp = self.session.get(f"{self.url}/metadata{path}", timeout=self.timeout)
        if resp.status_code == 404:
            raise NotFound(_detail(resp))
        resp.raise_for_status()
        return resp.json()

    def _post(self, path: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        resp = self.session.post(f"{self.url}/metadata{path}", json=payload, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def spec(self) -> Dict[str, Any]:
        return self._get("/spec")["spec"]

    def output(self, step: str, key: str, default: Any = _MISSING) -> Any:
        """Raises NotFound when the step has not written the key, unless a default is given."""
        try:
            return self._get(f"/outputs/{step}/{key}")["value"]
        except NotFound:
            if default is _MISSING:
                raise
            return default

    def secret(self, name: str, default: Any = _MISSING) -> Any:
        try:
            return self._get(f"/secrets/{name}")["value"]
        except NotFound:
            if default is _MISSING:
                raise
            return default

    def set_output(self, key: str, value: Any) -> Dict[str, Any]:
        return self._post(f"/outputs/{key}", {"value": value})

    def log(self, message: str, level: str = "info") -> Dict[str, Any]:
        return self._post("/logs", {"level": level, "message": message})

    def emit(self, name: str, parameters: Optional[Dict[str, Any]] = None,
             delivery_id: Optional[str] = None) -> List[str]:
        headers = {"X-Relay-Delivery": delivery_id} if delivery_id else None
        return self._post("/events", {"name": name, "parameters": parameters or {}}, headers=headers)["run_ids"]


def _detail(resp: requests.Response) -> str:
    try:
        return resp.json().get("detail", resp.text)
    except ValueError:
        return resp.text
