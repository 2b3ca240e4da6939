"""Shared constants for the news portal key pipeline.

Rotation, cleanup and alerting defaults live here. No magic numbers in other
modules — import from here. Every value can be overridden in config.yaml.
"""

# ─── Credential Format ───────────────────────────────────────────────────────

# Random bytes per API key. secrets.token_hex() doubles this into hex chars,
# so keys are 64 characters carrying 256 bits of entropy.
API_KEY_BYTES: int = 32

# Random bytes per WebSocket client id (32 hex chars).
CLIENT_ID_BYTES: int = 16

# Header carrying the API key on HTTP requests and WebSocket handshakes.
API_KEY_HEADER: str = "x-api-key"

# Header carrying the admin token on key-management routes.
ADMIN_TOKEN_HEADER: str = "x-admin-token"

# Uniform 401 message for every credential failure (missing/expired/revoked).
INVALID_API_KEY_MESSAGE: str = "Invalid API key"

# ─── Rotation Policy ─────────────────────────────────────────────────────────

# Key lifetime when only one key may be active at a time.
SINGLE_POLICY_KEY_TTL_MINUTES: int = 60

# Key lifetime in the overlap policy: one rotation interval plus the grace period.
OVERLAP_POLICY_KEY_TTL_MINUTES: int = 70

# Delay between a scheduled rotation and deactivation of the superseded key.
OVERLAP_GRACE_PERIOD_MINUTES: int = 10

# Description stamped on keys minted by the scheduler.
AUTO_ROTATED_DESCRIPTION: str = "Auto-rotated API key"

# ─── Admin-issued Keys ───────────────────────────────────────────────────────

MIN_EXPIRES_IN_DAYS: int = 1
MAX_EXPIRES_IN_DAYS: int = 365

# ─── Scheduler Cadences ──────────────────────────────────────────────────────

ROTATION_INTERVAL_MINUTES: int = 60
CLEANUP_INTERVAL_HOURS: int = 6

# Daily purge of keys that have been inactive for longer than the retention.
INACTIVE_PURGE_HOUR_OFFSET_MINUTES: int = 30      # 00:30 UTC
INACTIVE_RETENTION_DAYS: int = 7

# Daily security posture check.
SECURITY_CHECK_OFFSET_MINUTES: int = 60           # 01:00 UTC
EXPIRY_LOOKAHEAD_DAYS: int = 3
AUTH_FAILURE_WINDOW_MINUTES: int = 60
AUTH_FAILURE_ALERT_THRESHOLD: int = 10

# Daily heartbeat broadcast.
HEARTBEAT_OFFSET_MINUTES: int = 0                 # 00:00 UTC

# Weekly database backup (Sunday 01:00 UTC).
BACKUP_OFFSET_MINUTES: int = 60
BACKUP_KEEP: int = 4

# ─── WebSocket ───────────────────────────────────────────────────────────────

# Upper bound on a single send during broadcast; a slower client is dropped.
WS_SEND_TIMEOUT_SECONDS: float = 5.0

# Close code sent after a failed handshake (RFC 6455 policy violation).
WS_POLICY_VIOLATION: int = 1008

# Close code sent to a client dropped after a failed or timed-out send.
WS_INTERNAL_ERROR: int = 1011

# ─── Auth Failure Tracking ───────────────────────────────────────────────────

# Maximum failure timestamps retained in memory.
AUTH_FAILURE_HISTORY: int = 10_000
