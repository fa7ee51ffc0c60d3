import os

PORT = int(os.getenv("RELAY_PORT", 8080))
API_TOKEN = os.getenv("RELAY_API_TOKEN", "default-insecure-token")
DB_PATH = os.getenv("RELAY_DB_PATH", "relay.db")

# Address containers use to call back into the Metadata API
METADATA_URL = os.getenv("RELAY_METADATA_URL", f"http://host.docker.internal:{PORT}")

RUN_RETENTION_SECONDS = float(os.getenv("RELAY_RUN_RETENTION_SECONDS", 7 * 24 * 3600))
ARCHIVE_INTERVAL_SECONDS = float(os.getenv("RELAY_ARCHIVE_INTERVAL_SECONDS", 600))
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("RELAY_WEBHOOK_TIMEOUT_SECONDS", 30))

DOCKER_BINARY = os.getenv("RELAY_DOCKER_BINARY", "docker")
DOCKER_NETWORK = os.getenv("RELAY_DOCKER_NETWORK") or None
