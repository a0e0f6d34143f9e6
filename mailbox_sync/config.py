"""
Service configuration
Settings are read from environment variables at construction time; keyword
arguments override them (tests and embedding code)
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional, Set

import structlog

from .models.sync_models import CheckpointPolicy, ItemKind

logger = structlog.get_logger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


@dataclass
class SyncSettings:
    """Synchronization engine settings"""
    dedup_by_fingerprint: bool = field(
        default_factory=lambda: _env_bool("SYNC_DEDUP_BY_FINGERPRINT", "true"))
    fingerprint_tolerance_minutes: int = field(
        default_factory=lambda: _env_int("SYNC_FINGERPRINT_TOLERANCE_MINUTES", "1440"))
    lock_ttl_seconds: int = field(
        default_factory=lambda: _env_int("SYNC_LOCK_TTL_SECONDS", "900"))
    checkpoint_policy: CheckpointPolicy = field(
        default_factory=lambda: CheckpointPolicy(os.getenv("SYNC_CHECKPOINT_POLICY", "hold").lower()))
    default_import_horizon_days: int = field(
        default_factory=lambda: _env_int("SYNC_DEFAULT_IMPORT_HORIZON_DAYS", "30"))
    task_page_size: int = field(
        default_factory=lambda: _env_int("SYNC_TASK_PAGE_SIZE", "41"))
    email_page_size: int = field(
        default_factory=lambda: _env_int("SYNC_EMAIL_PAGE_SIZE", "123"))

    @property
    def fingerprint_tolerance(self) -> timedelta:
        return timedelta(minutes=self.fingerprint_tolerance_minutes)

    @property
    def default_import_horizon(self) -> timedelta:
        return timedelta(days=self.default_import_horizon_days)

    def page_size_for(self, kind: ItemKind) -> int:
        if kind == ItemKind.EMAIL:
            return self.email_page_size
        return self.task_page_size


@dataclass
class ListenerSettings:
    """Listener service connection settings"""
    service_url: str = field(
        default_factory=lambda: os.getenv("LISTENER_SERVICE_URL", "http://localhost:8090"))
    timeout_seconds: float = field(
        default_factory=lambda: _env_float("LISTENER_TIMEOUT_SECONDS", "300"))
    verify_ssl: bool = field(
        default_factory=lambda: _env_bool("LISTENER_VERIFY_SSL", "true"))
    callback_url: str = field(
        default_factory=lambda: os.getenv("LISTENER_CALLBACK_URL", "http://localhost:7200/listener/notifications"))


@dataclass
class FailoverSettings:
    """Failover control loop settings; interval 0 disables the loop"""
    interval_minutes: float = field(
        default_factory=lambda: _env_float("FAILOVER_INTERVAL_MINUTES", "1"))
    sync_offset_minutes: int = field(
        default_factory=lambda: _env_int("FAILOVER_SYNC_OFFSET_MINUTES", "5"))
    job_group: str = field(
        default_factory=lambda: os.getenv("FAILOVER_JOB_GROUP", "ListenerFailover"))
    recovery_job_group: str = field(
        default_factory=lambda: os.getenv("RECOVERY_JOB_GROUP", "ListenerRecovery"))

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def sync_offset(self) -> timedelta:
        return timedelta(minutes=self.sync_offset_minutes)


@dataclass
class BackendSettings:
    """Mailbox backend gateway settings"""
    base_url: str = field(
        default_factory=lambda: os.getenv("MAILBOX_BACKEND_URL", "http://localhost:8091"))
    timeout_seconds: float = field(
        default_factory=lambda: _env_float("MAILBOX_BACKEND_TIMEOUT_SECONDS", "60"))
    max_connections: int = field(
        default_factory=lambda: _env_int("HTTP_CONNECTION_POOL_SIZE", "50"))


LEGACY_EMAIL_INTEGRATION = "legacy_email_integration"


class FeatureFlags:
    """
    Boolean capability lookup scoped to a user

    Global flags come from FEATURE_FLAGS (comma separated); per-user overrides
    take precedence when present.
    """

    def __init__(self, enabled: Optional[Set[str]] = None):
        self._enabled: Set[str] = set(enabled or ())
        self._user_overrides: Dict[str, Dict[str, bool]] = {}

    @classmethod
    def from_env(cls) -> "FeatureFlags":
        raw = os.getenv("FEATURE_FLAGS", "")
        flags = {code.strip() for code in raw.split(",") if code.strip()}
        logger.info("Feature flags loaded", flags=sorted(flags))
        return cls(flags)

    def is_enabled(self, code: str, user_id: Optional[str] = None) -> bool:
        if user_id is not None:
            override = self._user_overrides.get(user_id, {}).get(code)
            if override is not None:
                return override
        return code in self._enabled

    def set_enabled(self, code: str, enabled: bool, user_id: Optional[str] = None) -> None:
        if user_id is None:
            if enabled:
                self._enabled.add(code)
            else:
                self._enabled.discard(code)
            return
        self._user_overrides.setdefault(user_id, {})[code] = enabled
