import asyncio
import json
import secrets as token_source
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from relay.common.errors import (
    ForbiddenError,
    MalformedWriteError,
    NotFoundError,
    UnauthorizedError,
)
from relay.controller.store.database import RunStore
from relay.controller.utils.logger import logger

REDACTED = "[REDACTED]"
LOG_LEVELS = {"debug", "info", "warning", "error"}

STEP = "step"
TRIGGER = "trigger"


@dataclass
class Session:
    """What one container instance is allowed to see, keyed by its credential."""
    kind: str
    workflow_name: str
    owner_id: str  # step_run_id for steps, instance_id for triggers
    spec: Dict[str, Any] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    run_id: Optional[str] = None
    step_name: Optional[str] = None


def redact(value: Any, secret_values: Iterable[str]) -> Tuple[Any, bool]:
    """
    Replaces any value equal to a secret with REDACTED and masks secret substrings
    inside strings. Returns (clean_value, changed).
    """
    candidates = sorted({s for s in secret_values if s}, key=len, reverse=True)
    if not candidates:
        return value, False

    def walk(v: Any) -> Tuple[Any, bool]:
        if isinstance(v, dict):
            changed = False
            out = {}
            for k, item in v.items():
                clean_key, key_changed = walk(k) if isinstance(k, str) else (k, False)
                out[clean_key], c = walk(item)
                changed = changed or c or key_changed
            return out, changed
        if isinstance(v, list):
            items = [walk(item) for item in v]
            return [i for i, _ in items], any(c for _, c in items)
        if isinstance(v, str):
            if v in candidates:
                return REDACTED, True
            masked = v
            for s in candidates:
                masked = masked.replace(s, REDACTED)
            return masked, masked != v
        if isinstance(v, (int, float)) and not isinstance(v, bool) and str(v) in candidates:
            return REDACTED, True
        return v, False

    return walk(value)


class MetadataService:
    """
    Run-scoped key/value, secret and log access for containers. Every call is
    authorised by the per-container credential handed out at launch; a step can
    only write its own outputs and only read data from its own run.
    """

    def __init__(self, store: RunStore):
        self.store = store
        self.sessions: Dict[str, Session] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        # Set by the trigger dispatcher
        self.event_sink: Optional[Callable[[Session, str, Dict[str, Any], Optional[str]], Awaitable[List[str]]]] = None

    # --- Credentials ---

    def issue_credential(self, session: Session) -> str:
        token = token_source.token_urlsafe(32)
        self.sessions[token] = session
        return token

    def revoke_credential(self, token: Optional[str]):
        session = self.sessions.pop(token, None) if token else None
        if session:
            for lock_key in [k for k in self._locks if k[0] == session.owner_id]:
                self._locks.pop(lock_key, None)

    def _session(self, token: Optional[str], kind: Optional[str] = None) -> Session:
        session = self.sessions.get(token) if token else None
        if not session:
            raise UnauthorizedError("Invalid or expired metadata credential")
        if kind and session.kind != kind:
            raise ForbiddenError(f"Operation not available to {session.kind} containers")
        return session

    # --- Reads ---

    def get_spec(self, token: str) -> Dict[str, Any]:
        return self._session(token).spec

    def get_output(self, token: str, step_name: str, key: str) -> Any:
        session = self._session(token, STEP)
        row = self.store.get_output(session.run_id, step_name, key)
        if row is None:
            raise NotFoundError(f"No output '{key}' for step '{step_name}'")
        return row["value"]

    def get_secret(self, token: str, name: str) -> str:
        session = self._session(token)
        if name not in session.secrets:
            raise NotFoundError(f"No secret named '{name}'")
        self.store.record_secret_access(session.run_id, session.owner_id, name)
        logger.info(
            f"Secret '{name}' read by {session.kind} {session.owner_id}",
            extra={"event": "secret_access", "run_id": session.run_id, "step_run_id": session.owner_id},
        )
        return session.secrets[name]

    # --- Writes ---

    async def set_output(self, token: str, key: str, value: Any) -> Dict[str, Any]:
        session = self._session(token, STEP)
        if not isinstance(key, str) or not key.strip() or "/" in key:
            raise MalformedWriteError(f"Invalid output key: {key!r}")
        if redact(key, session.secrets.values())[1]:
            logger.warning(
                f"Output key from step {session.step_name} contained secret material and was rejected",
                extra={"event": "secret_leak_blocked", "run_id": session.run_id, "step": session.step_name},
            )
            raise MalformedWriteError("Output key must not contain secret material")
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise MalformedWriteError(f"Output '{key}' is not JSON serializable: {e}")

        clean, redacted = redact(value, session.secrets.values())
        if redacted:
            logger.warning(
                f"Output '{key}' of step {session.step_name} contained secret material and was redacted",
                extra={"event": "secret_leak_blocked", "run_id": session.run_id, "step": session.step_name},
            )

        lock = self._locks.setdefault((session.owner_id, key), asyncio.Lock())
        async with lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None, self.store.set_output, session.run_id, session.step_name, key, clean
            )
        return {"key": key, "redacted": redacted}

    async def append_log(self, token: str, level: str, message: str) -> Dict[str, Any]:
        session = self._session(token)
        level = (level or "info").lower()
        if level not in LOG_LEVELS:
            raise MalformedWriteError(f"Unknown log level '{level}'")
        clean, redacted = redact(message, session.secrets.values())
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.store.append_log, session.owner_id, level, clean)
        return {"redacted": redacted}

    async def emit_event(self, token: str, name: str, parameters: Dict[str, Any], delivery_id: Optional[str] = None) -> List[str]:
        session = self._session(token, TRIGGER)
        if not name or not name.strip():
            raise MalformedWriteError("Event name is required")
        if self.event_sink is None:
            raise NotFoundError("No trigger dispatcher is attached")
        return await self.event_sink(session, name, parameters, delivery_id)
