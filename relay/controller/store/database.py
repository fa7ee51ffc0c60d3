import sqlite3
import json
import time
from contextlib import contextmanager
from typing import List, Optional, Dict, Any

from relay.common.models.runs import StepRunState, WorkflowRunState
from relay.controller.config import DB_PATH
from relay.controller.utils.logger import logger

TERMINAL_RUN_STATUSES = ("SUCCEEDED", "FAILED", "CANCELED")


class RunStore:
    """
    Durable Metadata Store. Every table that holds run data is keyed by run_id so
    concurrent runs never share rows; secrets live in their own table and are never
    copied into outputs or logs.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._init_db()

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS workflows (
                    name TEXT PRIMARY KEY,
                    definition JSON NOT NULL,
                    active INTEGER NOT NULL DEFAULT 0,
                    created_at REAL,
                    updated_at REAL
                );
                CREATE TABLE IF NOT EXISTS workflow_secrets (
                    workflow_name TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at REAL,
                    PRIMARY KEY (workflow_name, name)
                );
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    definition JSON NOT NULL,
                    parameters JSON,
                    triggered_by TEXT,
                    created_at REAL,
                    updated_at REAL,
                    finished_at REAL
                );
                CREATE TABLE IF NOT EXISTS step_runs (
                    step_run_id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    spec JSON,
                    exit_code INTEGER,
                    error_kind TEXT,
                    error TEXT,
                    attempts INTEGER DEFAULT 0,
                    started_at REAL,
                    finished_at REAL
                );
                CREATE TABLE IF NOT EXISTS outputs (
                    run_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value JSON,
                    updated_at REAL,
                    PRIMARY KEY (run_id, step_name, key)
                );
                CREATE TABLE IF NOT EXISTS step_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    step_run_id TEXT NOT NULL,
                    level TEXT,
                    message TEXT,
                    created_at REAL
                );
                CREATE TABLE IF NOT EXISTS secret_access (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    step_run_id TEXT,
                    name TEXT,
                    accessed_at REAL
                );
                CREATE TABLE IF NOT EXISTS trigger_instances (
                    instance_id TEXT PRIMARY KEY,
                    workflow_name TEXT NOT NULL,
                    trigger_name TEXT NOT NULL,
                    token TEXT UNIQUE,
                    status TEXT NOT NULL,
                    error TEXT,
                    created_at REAL,
                    updated_at REAL
                );
                CREATE TABLE IF NOT EXISTS events (
                    event_id TEXT PRIMARY KEY,
                    instance_id TEXT,
                    name TEXT,
                    parameters JSON,
                    run_ids JSON,
                    received_at REAL
                );
                CREATE TABLE IF NOT EXISTS archived_runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_name TEXT,
                    status TEXT,
                    snapshot JSON,
                    archived_at REAL
                );
                CREATE INDEX IF NOT EXISTS idx_step_runs_run ON step_runs (run_id);
                CREATE INDEX IF NOT EXISTS idx_step_logs_step ON step_logs (step_run_id);
            """)
            conn.commit()
            logger.info(f"RunStore initialized at {self.db_path}")

    # --- Workflow Definitions ---

    def save_workflow(self, name: str, definition_json: str):
        with self._get_conn() as conn:
            now = time.time()
            conn.execute("""
                INSERT INTO workflows (name, definition, active, created_at, updated_at)
                VALUES (?, ?, 0, ?, ?)
                ON CONFLICT(name) DO UPDATE SET definition = excluded.definition, updated_at = excluded.updated_at
            """, (name, definition_json, now, now))
            conn.commit()

    def get_workflow(self, name: str) -> Optional[Dict[str, Any]]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM workflows WHERE name = ?", (name,)).fetchone()
            if row:
                return dict(row)
            return None

    def list_workflows(self) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM workflows ORDER BY name").fetchall()
            return [dict(row) for row in rows]

    def set_workflow_active(self, name: str, active: bool):
        with self._get_conn() as conn:
            conn.execute(
                "UPDATE workflows SET active = ?, updated_at = ? WHERE name = ?",
                (1 if active else 0, time.time(), name),
            )
            conn.commit()

    # --- Secrets ---

    def set_secret(self, workflow_name: str, name: str, value: str):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO workflow_secrets (workflow_name, name, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(workflow_name, name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (workflow_name, name, value, time.time()))
            conn.commit()

    def get_secrets(self, workflow_name: str) -> Dict[str, str]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT name, value FROM workflow_secrets WHERE workflow_name = ?", (workflow_name,)
            ).fetchall()
            return {row["name"]: row["value"] for row in rows}

    def list_secret_names(self, workflow_name: str) -> List[str]:
        return sorted(self.get_secrets(workflow_name))

    def record_secret_access(self, run_id: str, step_run_id: str, name: str):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO secret_access (run_id, step_run_id, name, accessed_at)
                VALUES (?, ?, ?, ?)
            """, (run_id, step_run_id, name, time.time()))
            conn.commit()

    def get_secret_access(self, run_id: str) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM secret_access WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    # --- Runs ---

    def add_run(self, run: WorkflowRunState, definition_json: str):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO runs (run_id, workflow_name, status, definition, parameters, triggered_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run.run_id, run.workflow_name, run.status.value, definition_json,
                json.dumps(run.parameters), run.triggered_by, run.created_at, run.updated_at,
            ))
            for step in run.steps.values():
                self._insert_step_run(conn, run.run_id, step)
            conn.commit()

    def update_run(self, run_id: str, status: str, finished_at: Optional[float] = None):
        with self._get_conn() as conn:
            conn.execute("""
                UPDATE runs SET status = ?, updated_at = ?, finished_at = COALESCE(?, finished_at)
                WHERE run_id = ?
            """, (status, time.time(), finished_at, run_id))
            conn.commit()

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            if not row:
                return None
            data = dict(row)
            data["parameters"] = json.loads(data["parameters"] or "{}")
            return data

    def list_runs(self, workflow_name: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            if workflow_name:
                rows = conn.execute(
                    "SELECT * FROM runs WHERE workflow_name = ? ORDER BY created_at DESC LIMIT ?",
                    (workflow_name, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            results = []
            for row in rows:
                data = dict(row)
                data["parameters"] = json.loads(data["parameters"] or "{}")
                results.append(data)
            return results

    def get_unfinished_runs(self) -> List[Dict[str, Any]]:
        """Runs that were mid-flight when the controller stopped."""
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE status IN ('PENDING', 'RUNNING') ORDER BY created_at"
            ).fetchall()
            return [dict(row) for row in rows]

    # --- Step Runs ---

    def _insert_step_run(self, conn, run_id: str, step: StepRunState):
        conn.execute("""
            INSERT INTO step_runs (step_run_id, run_id, step_name, status, spec, attempts)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (step.step_run_id, run_id, step.step_name, step.status.value, json.dumps(step.spec), step.attempts))

    def update_step_run(self, step: StepRunState):
        with self._get_conn() as conn:
            conn.execute("""
                UPDATE step_runs
                SET status = ?, spec = ?, exit_code = ?, error_kind = ?, error = ?,
                    attempts = ?, started_at = ?, finished_at = ?
                WHERE step_run_id = ?
            """, (
                step.status.value, json.dumps(step.spec), step.exit_code,
                step.error_kind.value if step.error_kind else None, step.error,
                step.attempts, step.started_at, step.finished_at, step.step_run_id,
            ))
            conn.commit()

    def get_step_runs(self, run_id: str) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM step_runs WHERE run_id = ? ORDER BY rowid", (run_id,)
            ).fetchall()
            results = []
            for row in rows:
                data = dict(row)
                data["spec"] = json.loads(data["spec"] or "{}")
                results.append(data)
            return results

    # --- Outputs ---

    def set_output(self, run_id: str, step_name: str, key: str, value: Any):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO outputs (run_id, step_name, key, value, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(run_id, step_name, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """, (run_id, step_name, key, json.dumps(value), time.time()))
            conn.commit()

    def get_output(self, run_id: str, step_name: str, key: str) -> Optional[Dict[str, Any]]:
        """Returns {"value": ...} so a stored null is distinguishable from a missing key."""
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT value FROM outputs WHERE run_id = ? AND step_name = ? AND key = ?",
                (run_id, step_name, key),
            ).fetchone()
            if row:
                return {"value": json.loads(row["value"])}
            return None

    def get_outputs(self, run_id: str) -> Dict[str, Dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT step_name, key, value FROM outputs WHERE run_id = ?", (run_id,)
            ).fetchall()
            outputs: Dict[str, Dict[str, Any]] = {}
            for row in rows:
                outputs.setdefault(row["step_name"], {})[row["key"]] = json.loads(row["value"])
            return outputs

    # --- Logs ---

    def append_log(self, step_run_id: str, level: str, message: str):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO step_logs (step_run_id, level, message, created_at)
                VALUES (?, ?, ?, ?)
            """, (step_run_id, level, message, time.time()))
            conn.commit()

    def get_logs(self, step_run_id: str, tail: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            if tail:
                rows = conn.execute("""
                    SELECT * FROM (
                        SELECT id, level, message, created_at FROM step_logs
                        WHERE step_run_id = ? ORDER BY id DESC LIMIT ?
                    ) ORDER BY id
                """, (step_run_id, tail)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id, level, message, created_at FROM step_logs WHERE step_run_id = ? ORDER BY id",
                    (step_run_id,),
                ).fetchall()
            return [dict(row) for row in rows]

    # --- Trigger Instances & Events ---

    def add_trigger_instance(self, instance_id: str, workflow_name: str, trigger_name: str, token: str, status: str):
        with self._get_conn() as conn:
            now = time.time()
            conn.execute("""
                INSERT INTO trigger_instances (instance_id, workflow_name, trigger_name, token, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (instance_id, workflow_name, trigger_name, token, status, now, now))
            conn.commit()

    def update_trigger_instance(self, instance_id: str, status: str, error: Optional[str] = None):
        with self._get_conn() as conn:
            conn.execute("""
                UPDATE trigger_instances SET status = ?, error = COALESCE(?, error), updated_at = ?
                WHERE instance_id = ?
            """, (status, error, time.time(), instance_id))
            conn.commit()

    def list_trigger_instances(self, workflow_name: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            if workflow_name:
                rows = conn.execute(
                    "SELECT * FROM trigger_instances WHERE workflow_name = ? ORDER BY created_at", (workflow_name,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM trigger_instances ORDER BY created_at").fetchall()
            return [dict(row) for row in rows]

    def add_event(self, event_id: str, instance_id: str, name: str, parameters: Dict[str, Any], run_ids: List[str], received_at: float):
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO events (event_id, instance_id, name, parameters, run_ids, received_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (event_id, instance_id, name, json.dumps(parameters), json.dumps(run_ids), received_at))
            conn.commit()

    def get_events(self, instance_id: str) -> List[Dict[str, Any]]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE instance_id = ? ORDER BY received_at", (instance_id,)
            ).fetchall()
            results = []
            for row in rows:
                data = dict(row)
                data["parameters"] = json.loads(data["parameters"] or "{}")
                data["run_ids"] = json.loads(data["run_ids"] or "[]")
                results.append(data)
            return results

    # --- Retention ---

    def archive_runs(self, finished_before: float) -> List[str]:
        """
        Moves terminal runs finished before `finished_before` into archived_runs as a
        single JSON snapshot and deletes their live rows.
        """
        placeholders = ", ".join("?" for _ in TERMINAL_RUN_STATUSES)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM runs WHERE status IN ({placeholders}) AND finished_at IS NOT NULL AND finished_at < ?",
                (*TERMINAL_RUN_STATUSES, finished_before),
            ).fetchall()

            archived = []
            now = time.time()
            for row in rows:
                run = dict(row)
                run_id = run["run_id"]
                steps = [dict(s) for s in conn.execute(
                    "SELECT * FROM step_runs WHERE run_id = ?", (run_id,)
                ).fetchall()]
                step_ids = [s["step_run_id"] for s in steps]
                for step in steps:
                    step["logs"] = [dict(l) for l in conn.execute(
                        "SELECT level, message, created_at FROM step_logs WHERE step_run_id = ? ORDER BY id",
                        (step["step_run_id"],),
                    ).fetchall()]
                outputs = [dict(o) for o in conn.execute(
                    "SELECT step_name, key, value FROM outputs WHERE run_id = ?", (run_id,)
                ).fetchall()]

                snapshot = {"run": run, "steps": steps, "outputs": outputs}
                conn.execute("""
                    INSERT OR REPLACE INTO archived_runs (run_id, workflow_name, status, snapshot, archived_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (run_id, run["workflow_name"], run["status"], json.dumps(snapshot), now))

                for step_run_id in step_ids:
                    conn.execute("DELETE FROM step_logs WHERE step_run_id = ?", (step_run_id,))
                conn.execute("DELETE FROM outputs WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM step_runs WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
                archived.append(run_id)

            conn.commit()
            return archived

    def get_archived_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM archived_runs WHERE run_id = ?", (run_id,)).fetchone()
            if not row:
                return None
            data = dict(row)
            data["snapshot"] = json.loads(data["snapshot"])
            return data
