"""Centralized constants for the microservice manager."""

# Ports
DEFAULT_CONTAINER_PORT = 8443
DEFAULT_PORT_SEARCH_RANGE = 100
MAX_PORT = 65535

# Readiness probe
READINESS_PATH = "/v3/api-docs"
READINESS_MAX_ATTEMPTS = 20
READINESS_DELAY_SECONDS = 5.0
READINESS_REQUEST_TIMEOUT = 5.0

# Registry lock
LOCK_RETRY_INTERVAL_SECONDS = 1.0

# Manager payload cache (seconds)
CACHE_TTL_SECONDS = 60 * 60

# Remote fetches (seconds)
FETCH_TIMEOUT_SECONDS = 30.0

# File names
REGISTRY_FILE_NAME = "services"
LOCK_NAME = "services.lock"
STATE_FILE_NAME = "_state-file"
OPEN_PORT_FILE_NAME = "_open_port"
MANAGER_PAYLOAD_NAME = "microservices-manager.sh"
WRAPPER_PAYLOAD_NAME = "managerw"
WRAPPER_VERSION_NAME = "managerw-version"

DEFAULT_REPO_URL = "https://raw.githubusercontent.com/adam-carbone/microservice-manager/main"
DEFAULT_SERVICE_NAME = "notification-service"
