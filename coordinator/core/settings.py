"""Runtime configuration loaded from the environment"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from shared.enums import LimitType


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass
class RuntimeSettings:
    """Configuration for the coordinator process.

    Backends are optional: without DATABASE_URL the runtime keeps its state
    in memory, without REDIS_URL presence/metrics/tick locking are skipped.
    """
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    credential_encryption_key: Optional[str] = None

    # Leases
    lease_grace_seconds: int = 60
    reaper_interval_seconds: int = 15

    # Scheduler
    scheduler_interval_seconds: int = 30

    # Job defaults
    default_job_timeout_seconds: int = 300
    default_max_attempts: int = 3

    # Admission ceilings applied when an agent has no configured limits
    default_rate_limits: Dict[LimitType, int] = field(
        default_factory=lambda: {
            LimitType.PER_MINUTE: 60,
            LimitType.PER_HOUR: 1000,
            LimitType.PER_DAY: 10000,
        })

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """
        Load configuration from environment variables.

            DATABASE_URL: postgresql+psycopg://... (optional)
            REDIS_URL: redis://... (optional)
            CREDENTIAL_ENCRYPTION_KEY: Fernet key for stored user secrets
            LEASE_GRACE_SECONDS, REAPER_INTERVAL_SECONDS
            SCHEDULER_INTERVAL_SECONDS
            DEFAULT_JOB_TIMEOUT_SECONDS, DEFAULT_MAX_ATTEMPTS
            RATE_LIMIT_PER_MINUTE, RATE_LIMIT_PER_HOUR, RATE_LIMIT_PER_DAY
        """
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            credential_encryption_key=os.getenv("CREDENTIAL_ENCRYPTION_KEY")
            or None,
            lease_grace_seconds=_int_env("LEASE_GRACE_SECONDS", 60),
            reaper_interval_seconds=_int_env("REAPER_INTERVAL_SECONDS", 15),
            scheduler_interval_seconds=_int_env("SCHEDULER_INTERVAL_SECONDS",
                                                30),
            default_job_timeout_seconds=_int_env(
                "DEFAULT_JOB_TIMEOUT_SECONDS", 300),
            default_max_attempts=_int_env("DEFAULT_MAX_ATTEMPTS", 3),
            default_rate_limits={
                LimitType.PER_MINUTE: _int_env("RATE_LIMIT_PER_MINUTE", 60),
                LimitType.PER_HOUR: _int_env("RATE_LIMIT_PER_HOUR", 1000),
                LimitType.PER_DAY: _int_env("RATE_LIMIT_PER_DAY", 10000),
            },
        )
