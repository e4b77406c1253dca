"""Configuration for the reconciler package.

All configuration is loaded from environment variables once, at process
start, and handed to agents explicitly. Per-agent thresholds can be
overridden from an optional YAML policy file.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union, get_args, get_origin

import yaml

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Only these names are ever passed to the process supervisor.
SERVICE_PROCESS_NAMES: Tuple[str, ...] = (
    "vizora-middleware",
    "vizora-realtime",
    "vizora-web",
)


@dataclass(frozen=True)
class ServiceDef:
    """A supervised service: health URL, process name, memory limit."""
    name: str
    health_url: str
    process_name: str
    memory_limit_bytes: int


@dataclass(frozen=True)
class HealthGuardianPolicy:
    max_attempts: int = 2
    restart_cooldown_seconds: float = 30.0
    health_timeout_seconds: float = 10.0
    memory_threshold_pct: float = 85.0


@dataclass(frozen=True)
class FleetManagerPolicy:
    offline_threshold_minutes: float = 15.0
    persistent_threshold_minutes: float = 60.0
    cluster_min_displays: int = 3
    max_reset_attempts: int = 2
    max_ping_attempts: Optional[int] = None


@dataclass(frozen=True)
class ContentLifecyclePolicy:
    orphan_age_days: int = 30
    storage_warn_pct: float = 80.0
    storage_critical_pct: float = 90.0
    max_archive_attempts: int = 2


@dataclass(frozen=True)
class ScheduleDoctorPolicy:
    max_deactivate_attempts: int = 2


@dataclass(frozen=True)
class DbMaintainerPolicy:
    log_max_age_days: float = 7.0
    vacuum_timeout_seconds: float = 120.0
    connect_timeout_seconds: int = 10


@dataclass(frozen=True)
class OpsReporterPolicy:
    alert_suppression_minutes: float = 60.0
    prune_age_hours: float = 24.0
    expected_agents: Dict[str, float] = field(default_factory=lambda: {
        "health-guardian": 10,
        "content-lifecycle": 30,
        "fleet-manager": 20,
        "schedule-doctor": 30,
        "db-maintainer": 25 * 60,
    })


DEFAULT_POLICIES: Dict[str, Any] = {
    "health-guardian": HealthGuardianPolicy(),
    "fleet-manager": FleetManagerPolicy(),
    "content-lifecycle": ContentLifecyclePolicy(),
    "schedule-doctor": ScheduleDoctorPolicy(),
    "db-maintainer": DbMaintainerPolicy(),
    "ops-reporter": OpsReporterPolicy(),
}


@dataclass
class OpsConfig:
    """Reconciler configuration loaded from environment."""

    # Control plane
    base_url: str = "http://localhost:3000"
    api_prefix: str = "/api/v1"
    email: str = ""
    password: str = ""

    # Dashboard credentials (ops-reporter)
    dashboard_email: str = ""
    dashboard_password: str = ""

    # Services
    realtime_url: str = "http://localhost:3002"
    web_url: str = "http://localhost:3001"

    # Journal
    state_file: str = "logs/ops-state.json"
    policy_file: str = ""

    # Maintenance targets (db-maintainer)
    database_url: str = ""
    redis_url: str = "redis://localhost:6379"

    # Notifications
    slack_webhook_url: str = ""
    comms_url: str = ""

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "OpsConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.environ.get("VALIDATOR_BASE_URL", "http://localhost:3000").rstrip("/"),
            api_prefix=os.environ.get("OPS_API_PREFIX", "/api/v1"),
            email=os.environ.get("OPS_EMAIL") or os.environ.get("VALIDATOR_EMAIL", ""),
            password=os.environ.get("OPS_PASSWORD") or os.environ.get("VALIDATOR_PASSWORD", ""),
            dashboard_email=os.environ.get("VALIDATOR_EMAIL", ""),
            dashboard_password=os.environ.get("VALIDATOR_PASSWORD", ""),
            realtime_url=os.environ.get("REALTIME_URL", "http://localhost:3002").rstrip("/"),
            web_url=os.environ.get("WEB_URL", "http://localhost:3001").rstrip("/"),
            state_file=os.environ.get("OPS_STATE_FILE", "logs/ops-state.json"),
            policy_file=os.environ.get("OPS_POLICY_FILE", ""),
            slack_webhook_url=os.environ.get("SLACK_WEBHOOK_URL", ""),
            comms_url=os.environ.get("COMMS_URL", ""),
            database_url=os.environ.get("DATABASE_URL", ""),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and self.password)

    def service_definitions(self) -> Tuple[ServiceDef, ...]:
        """Services watched by the health guardian."""
        middleware, realtime, web = SERVICE_PROCESS_NAMES
        return (
            ServiceDef(
                name="middleware",
                health_url=f"{self.base_url}{self.api_prefix}/health/ready",
                process_name=middleware,
                memory_limit_bytes=512 * MB,
            ),
            ServiceDef(
                name="realtime",
                health_url=f"{self.realtime_url}/health",
                process_name=realtime,
                memory_limit_bytes=512 * MB,
            ),
            ServiceDef(
                name="web",
                health_url=f"{self.web_url}/",
                process_name=web,
                memory_limit_bytes=1024 * MB,
            ),
        )

    def policy_for(self, agent: str) -> Any:
        """Return the agent's policy with any policy-file overrides applied."""
        default = DEFAULT_POLICIES[agent]
        overrides = load_policy_overrides(self.policy_file).get(agent) or {}
        return apply_overrides(default, overrides, agent)


def load_policy_overrides(path: str) -> Dict[str, Dict[str, Any]]:
    """Load the YAML policy file. Missing or broken files mean no overrides."""
    if not path:
        return {}

    policy_path = Path(path)
    if not policy_path.exists():
        logger.warning(f"Policy file not found: {policy_path}")
        return {}

    try:
        with open(policy_path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load policy file {policy_path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Policy file {policy_path} is not a mapping, ignoring")
        return {}

    return {str(k): v for k, v in data.items() if isinstance(v, dict)}


def _scalar(target: type, value: Any) -> Any:
    if isinstance(value, bool) and target is not bool:
        raise TypeError("booleans are not numbers")
    if target is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{value} is not a whole number")
        return int(value)
    return target(value)


def coerce_policy_value(f: dataclasses.Field, value: Any) -> Any:
    """Convert a YAML value to the declared type of a policy field.

    Raises TypeError or ValueError if it cannot be converted.
    """
    target = f.type
    optional = False
    if get_origin(target) is Union:
        args = [a for a in get_args(target) if a is not type(None)]
        optional = len(args) < len(get_args(target))
        target = args[0]

    if value is None:
        if optional:
            return None
        raise ValueError("null is not allowed")

    if get_origin(target) is dict:
        if not isinstance(value, dict):
            raise TypeError(f"expected a mapping, got {type(value).__name__}")
        key_type, value_type = get_args(target)
        return {_scalar(key_type, k): _scalar(value_type, v) for k, v in value.items()}

    return _scalar(target, value)


def apply_overrides(policy: Any, overrides: Dict[str, Any], agent: str = "") -> Any:
    """Return a copy of ``policy`` with known fields replaced.

    Values are converted to each field's declared type; values that do not
    convert are logged and skipped.
    """
    fields = {f.name: f for f in dataclasses.fields(policy)}
    accepted = {}
    for key, value in overrides.items():
        if key not in fields:
            logger.warning(f"Ignoring unknown policy key for {agent}: {key}")
            continue
        try:
            accepted[key] = coerce_policy_value(fields[key], value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring invalid value for {agent}.{key}: {value!r} ({e})")
    if not accepted:
        return policy
    logger.info(f"Policy overrides for {agent}: {accepted}")
    return dataclasses.replace(policy, **accepted)
