# =============================================================================
# Relay Session -- Defaults
# =============================================================================
#
# All durations are seconds. Environment variables use the *_MS names and
# are converted in SessionConfig.from_env().
# =============================================================================

# -- Readiness / pairing ------------------------------------------------------

READY_TIMEOUT = 60.0
PAIRING_TIMEOUT = 120.0
FALLBACK_POLL_INTERVAL = 5.0

# -- Initialization retries ---------------------------------------------------

MAX_INIT_RETRIES = 3
INIT_RETRY_BASE_DELAY = 10.0

# -- Reconnection -------------------------------------------------------------

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BASE_DELAY = 5.0
BACKOFF_CAP = 900.0  # 15 minutes
BACKOFF_JITTER_RATIO = 0.2

# -- Health monitor -----------------------------------------------------------

HEALTH_CHECK_INTERVAL = 300.0  # 0 disables
MAX_STATE_RETRIES = 3
STATE_RETRY_DELAY_MIN = 15.0
STATE_RETRY_DELAY_MAX = 30.0
MAX_REINIT_ATTEMPTS = 2
ESCALATION_COOLDOWN = 300.0
PAIRING_GRACE_PERIOD = 120.0
IN_FLIGHT_WARN_AFTER = 300.0
IN_FLIGHT_FORCE_AFTER = 600.0
AUTH_FAILURES_BEFORE_CLEAR = 2

# -- Deduplication ------------------------------------------------------------

DEDUP_TTL = 86_400.0  # 24 hours
DEDUP_SWEEP_INTERVAL = 3_600.0  # 1 hour

# -- Dispatch queue -----------------------------------------------------------

RATE_LIMIT_CAPACITY = 40
RATE_LIMIT_WINDOW = 60.0
RATE_LIMIT_MIN_SPACING = 0.35
SEND_MAX_RETRIES = 3
SEND_RETRY_DELAY = 1.0  # linear: delay * attempt

# -- Credential storage -------------------------------------------------------

AUTH_DIR_PARENT = ".relay_session"
AUTH_DIR_NAME = "auth"
CREDENTIAL_FILE_PREFIX = "session-"

# -- Bridge transport ---------------------------------------------------------

BRIDGE_PROTOCOL_VERSION = 1
BRIDGE_CONNECT_TIMEOUT = 10.0
BRIDGE_REQUEST_TIMEOUT = 20.0
BRIDGE_MAX_MESSAGE_SIZE = 1_048_576  # 1 MB
