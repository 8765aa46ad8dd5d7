from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class DeployRequest(BaseModel):
    artifact_ref: str = Field(..., description="Image reference to deploy (name:tag)")
    environment: str = Field(..., description="Target environment (dns-safe)")
    strategy: Literal["direct", "blue-green"] = "direct"
    replicas: int = Field(1, ge=1, le=50)
    port: int = Field(3000, ge=1, le=65535, description="Container port the service listens on")
    health_path: str = Field("/health", description="Health endpoint path")
    env: dict[str, str] = Field(default_factory=dict, description="Environment variables for new instances")

    # Per-deployment overrides of the HGD_* defaults
    health_check_timeout_s: float | None = Field(None, gt=0, le=300)
    health_check_max_retries: int | None = Field(None, ge=1, le=1000)
    health_check_retry_delay_s: float | None = Field(None, ge=0, le=3600)
    health_check_initial_delay_s: float | None = Field(None, ge=0, le=3600)
    retry_backoff_factor: float | None = Field(None, ge=1, le=10, description="Exponential backoff between probes")
    post_cutover_grace_period_s: float | None = Field(None, ge=0, le=3600)
    pre_deploy_checks: list[str] | None = Field(
        None, description="docker | tcp:host:port | path:<file> | env:<NAME>; defaults to HGD_PRE_DEPLOY_CHECKS"
    )
    wait: bool = Field(False, description="Block until the deployment is terminal")
