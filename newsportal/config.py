"""Config loading for the news portal key service.

Reads ``.newsportal/config.yaml`` (or ``~/.newsportal/config.yaml``).
Raises SystemExit on parse errors or a missing ``version`` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. ``config_path`` argument (if provided — for testing or explicit override)
  2. NEWSPORTAL_CONFIG environment variable (if set)
  3. ``.newsportal/config.yaml`` (working directory — for development)
  4. ``~/.newsportal/config.yaml`` (home directory — for production deployments)

Environment variable overrides (applied after the file):
  NEWSPORTAL_PORT              — server.port
  NEWSPORTAL_DB_PATH           — database.path
  NEWSPORTAL_ENCRYPTION_KEY    — websocket.encryption_key (64 hex chars)
  NEWSPORTAL_ADMIN_TOKEN_HASH  — security.admin_token_hash (bcrypt hash)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

import yaml

from newsportal import constants as c
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# ─── Validation sets ─────────────────────────────────────────────────────────

# "single": one active key; "overlap": previous key survives a grace period.
VALID_ROTATION_POLICIES: frozenset[str] = frozenset({"single", "overlap"})

DEFAULT_CONFIG_PATHS = [
    ".newsportal/config.yaml",
    os.path.expanduser("~/.newsportal/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 3000


@dataclass
class DatabaseConfig:
    """Credential store location and backup directory."""

    path: str = "~/.newsportal/keys.db"
    backup_dir: str = "~/.newsportal/backups"
    backup_keep: int = c.BACKUP_KEEP


@dataclass
class RotationConfig:
    """Key rotation policy.

    key_ttl_minutes=None picks the policy default (60 for single, 70 for overlap).
    """

    policy: str = "single"
    key_ttl_minutes: Optional[int] = None
    grace_period_minutes: int = c.OVERLAP_GRACE_PERIOD_MINUTES
    rotate_on_startup: bool = True

    @property
    def key_ttl(self) -> timedelta:
        if self.key_ttl_minutes is not None:
            return timedelta(minutes=self.key_ttl_minutes)
        if self.policy == "overlap":
            return timedelta(minutes=c.OVERLAP_POLICY_KEY_TTL_MINUTES)
        return timedelta(minutes=c.SINGLE_POLICY_KEY_TTL_MINUTES)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_period_minutes)


@dataclass
class ScheduleConfig:
    """Scheduler cadences. All times are UTC."""

    enabled: bool = True
    rotation_interval_minutes: int = c.ROTATION_INTERVAL_MINUTES
    cleanup_interval_hours: int = c.CLEANUP_INTERVAL_HOURS
    inactive_retention_days: int = c.INACTIVE_RETENTION_DAYS
    backup_enabled: bool = True


@dataclass
class SecurityConfig:
    """Admin authentication and security-posture thresholds."""

    admin_token_hash: Optional[str] = None
    expiry_lookahead_days: int = c.EXPIRY_LOOKAHEAD_DAYS
    auth_failure_window_minutes: int = c.AUTH_FAILURE_WINDOW_MINUTES
    auth_failure_threshold: int = c.AUTH_FAILURE_ALERT_THRESHOLD


@dataclass
class WebSocketConfig:
    """Real-time channel settings.

    encryption_key=None means a random key is generated at startup, which only
    works for clients that obtain it out of band for this process lifetime.
    """

    encrypt_messages: bool = True
    require_encrypted: bool = True
    encryption_key: Optional[str] = None
    send_timeout_seconds: float = c.WS_SEND_TIMEOUT_SECONDS


@dataclass
class Config:
    """Root configuration object populated from config.yaml.

    All fields have safe defaults — the service can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On an invalid rotation.policy or a non-mapping section.
        """
        server_raw = _section(raw, "server", path)
        database_raw = _section(raw, "database", path)
        rotation_raw = _section(raw, "rotation", path)
        schedule_raw = _section(raw, "schedule", path)
        security_raw = _section(raw, "security", path)
        websocket_raw = _section(raw, "websocket", path)

        # ── Rotation ──────────────────────────────────────────────────────────
        policy = rotation_raw.get("policy", "single")
        if policy not in VALID_ROTATION_POLICIES:
            msg = (
                f"CONFIG ERROR: Invalid rotation.policy: '{policy}'. "
                f"Supported values: {sorted(VALID_ROTATION_POLICIES)}."
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)
        rotation = RotationConfig(
            policy=policy,
            key_ttl_minutes=rotation_raw.get("key_ttl_minutes"),
            grace_period_minutes=rotation_raw.get(
                "grace_period_minutes", c.OVERLAP_GRACE_PERIOD_MINUTES
            ),
            rotate_on_startup=rotation_raw.get("rotate_on_startup", True),
        )

        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 3000),
        )

        database = DatabaseConfig(
            path=database_raw.get("path", "~/.newsportal/keys.db"),
            backup_dir=database_raw.get("backup_dir", "~/.newsportal/backups"),
            backup_keep=database_raw.get("backup_keep", c.BACKUP_KEEP),
        )

        schedule = ScheduleConfig(
            enabled=schedule_raw.get("enabled", True),
            rotation_interval_minutes=schedule_raw.get(
                "rotation_interval_minutes", c.ROTATION_INTERVAL_MINUTES
            ),
            cleanup_interval_hours=schedule_raw.get(
                "cleanup_interval_hours", c.CLEANUP_INTERVAL_HOURS
            ),
            inactive_retention_days=schedule_raw.get(
                "inactive_retention_days", c.INACTIVE_RETENTION_DAYS
            ),
            backup_enabled=schedule_raw.get("backup_enabled", True),
        )

        security = SecurityConfig(
            admin_token_hash=security_raw.get("admin_token_hash"),
            expiry_lookahead_days=security_raw.get(
                "expiry_lookahead_days", c.EXPIRY_LOOKAHEAD_DAYS
            ),
            auth_failure_window_minutes=security_raw.get(
                "auth_failure_window_minutes", c.AUTH_FAILURE_WINDOW_MINUTES
            ),
            auth_failure_threshold=security_raw.get(
                "auth_failure_threshold", c.AUTH_FAILURE_ALERT_THRESHOLD
            ),
        )

        websocket = WebSocketConfig(
            encrypt_messages=websocket_raw.get("encrypt_messages", True),
            require_encrypted=websocket_raw.get("require_encrypted", True),
            encryption_key=websocket_raw.get("encryption_key"),
            send_timeout_seconds=websocket_raw.get(
                "send_timeout_seconds", c.WS_SEND_TIMEOUT_SECONDS
            ),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            database=database,
            rotation=rotation,
            schedule=schedule,
            security=security,
            websocket=websocket,
            path=path,
        )


def _section(raw: dict, name: str, path: Optional[str]) -> dict[str, Any]:
    """Return raw[name] as a dict; missing or null sections become {}."""
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        print(
            f"CONFIG ERROR: '{name}' in {path} must be a mapping, got {type(value).__name__}.",
            file=sys.stderr,
        )
        raise SystemExit(1)
    return value


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate the service configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Returns:
        Config object with all values populated (file values merged onto defaults).

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid ``rotation.policy``, or invalid env overrides.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("NEWSPORTAL_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "The service refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    # ── Security warnings ─────────────────────────────────────────────────────
    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: binding on 0.0.0.0 (all interfaces). "
            "Put the service behind a reverse proxy that terminates TLS."
        )
    if config.websocket.require_encrypted and not config.websocket.encrypt_messages:
        logger.warning(
            "websocket.require_encrypted is on but encrypt_messages is off — "
            "clients will receive plaintext but must send ciphertext"
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        rotation_policy=config.rotation.policy,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Called for both file-loaded and default configs so env vars always take
    precedence over any file value.

    Raises:
        SystemExit(1): If NEWSPORTAL_PORT is set but not a valid integer, or
                       NEWSPORTAL_ENCRYPTION_KEY is not 64 hex characters.
    """
    env_port = os.environ.get("NEWSPORTAL_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            msg = (
                f"CONFIG ERROR: NEWSPORTAL_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)

    env_db = os.environ.get("NEWSPORTAL_DB_PATH")
    if env_db:
        config.database.path = env_db

    env_key = os.environ.get("NEWSPORTAL_ENCRYPTION_KEY")
    if env_key:
        try:
            valid = len(bytes.fromhex(env_key)) == 32
        except ValueError:
            valid = False
        if not valid:
            print(
                "CONFIG ERROR: NEWSPORTAL_ENCRYPTION_KEY must be 64 hex characters (32 bytes).",
                file=sys.stderr,
            )
            raise SystemExit(1)
        config.websocket.encryption_key = env_key

    env_admin = os.environ.get("NEWSPORTAL_ADMIN_TOKEN_HASH")
    if env_admin:
        config.security.admin_token_hash = env_admin
