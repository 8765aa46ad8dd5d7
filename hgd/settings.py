from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("HGD_DB_PATH", "hgd.db")
    docker_network: str = os.getenv("HGD_DOCKER_NETWORK", "hgd")
    # Container that fronts the environment; reloaded after a traffic shift.
    proxy_container: str | None = os.getenv("HGD_PROXY_CONTAINER")
    proxy_reload_command: str = os.getenv("HGD_PROXY_RELOAD_COMMAND", "nginx -s reload")

    # Deployment defaults (overridable per request)
    health_timeout_s: float = _env_float("HGD_HEALTH_TIMEOUT_S", 5.0)
    health_max_retries: int = _env_int("HGD_HEALTH_MAX_RETRIES", 10)
    health_retry_delay_s: float = _env_float("HGD_HEALTH_RETRY_DELAY_S", 10.0)
    health_initial_delay_s: float = _env_float("HGD_HEALTH_INITIAL_DELAY_S", 0.0)
    grace_period_s: float = _env_float("HGD_GRACE_PERIOD_S", 10.0)
    pre_deploy_checks: tuple[str, ...] = _env_list("HGD_PRE_DEPLOY_CHECKS")

    # API basic auth for mutating endpoints
    admin_user: str = os.getenv("HGD_ADMIN_USER", "admin")
    admin_password: str = os.getenv("HGD_ADMIN_PASSWORD", "admin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("HGD_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("HGD_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("HGD_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("HGD_SMTP_USER")
    smtp_password: str | None = os.getenv("HGD_SMTP_PASSWORD")
    email_from: str | None = os.getenv("HGD_EMAIL_FROM")
    email_to: str | None = os.getenv("HGD_EMAIL_TO")

    # Monitoring webhook (optional), receives a JSON summary of each finished deployment.
    webhook_url: str | None = os.getenv("HGD_WEBHOOK_URL")
    webhook_timeout_s: float = _env_float("HGD_WEBHOOK_TIMEOUT_S", 5.0)


settings = Settings()
