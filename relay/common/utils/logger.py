import logging
import datetime
import json
import sys
import collections
import os

HOSTNAME = os.getenv("HOSTNAME", "relay-controller")
CONTEXT_FIELDS = ("run_id", "step", "step_run_id", "trigger", "instance_id", "workflow")


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": datetime.datetime.fromtimestamp(record.created).isoformat(),
            "host": HOSTNAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": getattr(record, "event", "log"),  # Default to 'log' if not provided
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_obj[key] = value
        if record.exc_info:
            log_obj["error"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class LogBuffer(logging.Handler):
    def __init__(self, capacity=1000):
        super().__init__()
        self.buffer = collections.deque(maxlen=capacity)
        self.formatted_buffer = collections.deque(maxlen=capacity)

    def emit(self, record):
        try:
            msg = self.format(record)
            self.buffer.append(record)
            self.formatted_buffer.append(json.loads(msg))
        except Exception:
            self.handleError(record)


def setup_logger(name, level=None, capacity=None, capture_uvicorn=False):
    """
    Returns (logger, buffer) for `name`. Handlers are attached once per logger name,
    so importing several modules that call this is harmless.
    """
    level = level or os.getenv("RELAY_LOG_LEVEL", "INFO").upper()
    capacity = capacity or int(os.getenv("RELAY_LOG_BUFFER_SIZE", 1000))

    logger = logging.getLogger(name)
    existing = next((h for h in logger.handlers if isinstance(h, LogBuffer)), None)
    if existing:
        return logger, existing

    log_buffer = LogBuffer(capacity=capacity)
    log_buffer.setFormatter(JSONFormatter())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter())

    logger.setLevel(level)
    logger.addHandler(console_handler)
    logger.addHandler(log_buffer)
    logger.propagate = False

    if capture_uvicorn:
        # Route uvicorn through the same JSON handlers and buffer
        for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
            u_logger = logging.getLogger(logger_name)
            u_logger.handlers = [console_handler, log_buffer]
            u_logger.propagate = False

    return logger, log_buffer
