from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Callable, Mapping

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Strategy(str, Enum):
    DIRECT = "direct"
    BLUE_GREEN = "blue-green"


class AttemptState(str, Enum):
    PENDING = "PENDING"
    VALIDATING = "VALIDATING"
    BACKING_UP = "BACKING_UP"
    DEPLOYING = "DEPLOYING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    CUTTING_OVER = "CUTTING_OVER"
    ROLLING_BACK = "ROLLING_BACK"
    SUCCEEDED = "SUCCEEDED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({AttemptState.SUCCEEDED, AttemptState.ROLLED_BACK, AttemptState.FAILED})
# States in which the runtime may already have been mutated.
MUTATING_STATES = frozenset(
    {AttemptState.DEPLOYING, AttemptState.HEALTH_CHECKING, AttemptState.CUTTING_OVER, AttemptState.ROLLING_BACK}
)


class Outcome(str, Enum):
    SUCCESS = "success"
    ROLLED_BACK = "rolledBack"
    FAILED = "failed"


OUTCOME_FOR_STATE = {
    AttemptState.SUCCEEDED: Outcome.SUCCESS,
    AttemptState.ROLLED_BACK: Outcome.ROLLED_BACK,
    AttemptState.FAILED: Outcome.FAILED,
}


ENVIRONMENT_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def validate_environment(name: str) -> None:
    if not ENVIRONMENT_RE.match(name):
        raise ValueError(
            "Invalid environment name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes only ever hit the deployed instances.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


@dataclass(frozen=True)
class Release:
    artifact_ref: str
    environment: str
    strategy: Strategy = Strategy.DIRECT
    replicas: int = 1
    port: int = 3000
    health_path: str = "/health"
    env: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_ref": self.artifact_ref,
            "environment": self.environment,
            "strategy": self.strategy.value,
            "replicas": self.replicas,
            "port": self.port,
            "health_path": self.health_path,
            "env": dict(self.env),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Release":
        return cls(
            artifact_ref=data["artifact_ref"],
            environment=data["environment"],
            strategy=Strategy(data.get("strategy", Strategy.DIRECT.value)),
            replicas=int(data.get("replicas", 1)),
            port=int(data.get("port", 3000)),
            health_path=data.get("health_path", "/health"),
            env=dict(data.get("env") or {}),
        )


@dataclass(frozen=True)
class ResolvedArtifact:
    ref: str
    image_id: str
    digest: str | None = None


@dataclass(frozen=True)
class InstanceSet:
    """A group of running instances of one artifact in one environment."""

    environment: str
    slot: str
    instance_ids: tuple[str, ...] = ()
    base_urls: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.instance_ids

    def endpoints(self, health_path: str) -> list[str]:
        return [f"{base.rstrip('/')}{health_path}" for base in self.base_urls]

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "slot": self.slot,
            "instance_ids": list(self.instance_ids),
            "base_urls": list(self.base_urls),
        }


@dataclass(frozen=True)
class DeployConfig:
    health_check_timeout_s: float = 5.0
    health_check_max_retries: int = 10
    health_check_retry_delay_s: float = 10.0
    health_check_initial_delay_s: float = 0.0
    pre_deploy_checks: tuple[Callable[[], bool], ...] = ()
    post_cutover_grace_period_s: float = 10.0
    # Any object with .delay(probe_number) -> seconds; defaults to a fixed delay.
    retry_policy: Any = None

    def __post_init__(self) -> None:
        if self.health_check_max_retries < 1:
            raise ValueError("health_check_max_retries must be >= 1")
        if self.health_check_timeout_s <= 0:
            raise ValueError("health_check_timeout_s must be > 0")
        for name in ("health_check_retry_delay_s", "health_check_initial_delay_s", "post_cutover_grace_period_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_settings(cls, **overrides: Any) -> "DeployConfig":
        from .checks import parse_check

        values: dict[str, Any] = {
            "health_check_timeout_s": settings.health_timeout_s,
            "health_check_max_retries": settings.health_max_retries,
            "health_check_retry_delay_s": settings.health_retry_delay_s,
            "health_check_initial_delay_s": settings.health_initial_delay_s,
            "post_cutover_grace_period_s": settings.grace_period_s,
            "pre_deploy_checks": tuple(parse_check(s) for s in settings.pre_deploy_checks),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def effective_retry_policy(self) -> Any:
        if self.retry_policy is not None:
            return self.retry_policy
        from .health import FixedDelay

        return FixedDelay(self.health_check_retry_delay_s)


@dataclass
class DeploymentAttempt:
    id: str
    release: Release
    state: AttemptState = AttemptState.PENDING
    backup_ref: str | None = None
    started_at: str = field(default_factory=utc_now)
    ended_at: str | None = None
    health_attempt_count: int = 0
    outcome: Outcome | None = None
    cause: dict[str, str] | None = None
    # Failure that triggered a rollback; kept when the rollback itself fails.
    trigger: dict[str, str] | None = None
    cancel_requested: bool = False
    history: list[tuple[str, str]] = field(default_factory=list)

    @property
    def environment(self) -> str:
        return self.release.environment

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def copy(self) -> "DeploymentAttempt":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "release": self.release.to_dict(),
            "state": self.state.value,
            "backup_ref": self.backup_ref,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "health_attempt_count": self.health_attempt_count,
            "outcome": self.outcome.value if self.outcome else None,
            "cause": self.cause,
            "trigger": self.trigger,
            "cancel_requested": self.cancel_requested,
            "history": [list(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeploymentAttempt":
        return cls(
            id=data["id"],
            release=Release.from_dict(data["release"]),
            state=AttemptState(data["state"]),
            backup_ref=data.get("backup_ref"),
            started_at=data["started_at"],
            ended_at=data.get("ended_at"),
            health_attempt_count=int(data.get("health_attempt_count", 0)),
            outcome=Outcome(data["outcome"]) if data.get("outcome") else None,
            cause=data.get("cause"),
            trigger=data.get("trigger"),
            cancel_requested=bool(data.get("cancel_requested", False)),
            history=[(h[0], h[1]) for h in data.get("history", [])],
        )


class AttemptRegistry:
    """In-memory attempts and the per-environment deployment locks."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.attempts: dict[str, DeploymentAttempt] = {}
        self.active: dict[str, str] = {}  # environment -> attempt id

    def claim_environment(self, environment: str, attempt_id: str) -> bool:
        with self.lock:
            if environment in self.active:
                return False
            self.active[environment] = attempt_id
            return True

    def release_environment(self, environment: str, attempt_id: str) -> None:
        with self.lock:
            if self.active.get(environment) == attempt_id:
                del self.active[environment]

    def active_attempt(self, environment: str) -> str | None:
        with self.lock:
            return self.active.get(environment)

    def put(self, attempt: DeploymentAttempt) -> None:
        with self.lock:
            self.attempts[attempt.id] = attempt

    def get(self, attempt_id: str) -> DeploymentAttempt | None:
        with self.lock:
            a = self.attempts.get(attempt_id)
            return a.copy() if a else None

    def list_attempts(self, environment: str | None = None) -> list[DeploymentAttempt]:
        with self.lock:
            return [a.copy() for a in self.attempts.values() if environment is None or a.environment == environment]
