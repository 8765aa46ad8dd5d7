from __future__ import annotations

import secrets
from dataclasses import replace
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import DeployRequest
from .checks import parse_check
from .docker_ops import DockerImageSource, DockerRuntimeController
from .errors import AlreadyTerminalError, ConcurrentDeploymentError
from .health import ExponentialBackoff, HttpHealthProber
from .orchestrator import Orchestrator
from .runtime import DeployConfig, Release, Strategy, validate_environment, validate_health_path
from .settings import settings


security = HTTPBasic()


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username, settings.admin_user)
    pass_ok = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (user_ok and pass_ok):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def default_orchestrator() -> Orchestrator:
    return Orchestrator(DockerImageSource(), DockerRuntimeController(), HttpHealthProber())


def build_release(req: DeployRequest) -> Release:
    validate_environment(req.environment)
    validate_health_path(req.health_path)
    return Release(
        artifact_ref=req.artifact_ref,
        environment=req.environment,
        strategy=Strategy(req.strategy),
        replicas=req.replicas,
        port=req.port,
        health_path=req.health_path,
        env=dict(req.env),
    )


def build_config(req: DeployRequest) -> DeployConfig:
    overrides: dict[str, Any] = {
        "health_check_timeout_s": req.health_check_timeout_s,
        "health_check_max_retries": req.health_check_max_retries,
        "health_check_retry_delay_s": req.health_check_retry_delay_s,
        "health_check_initial_delay_s": req.health_check_initial_delay_s,
        "post_cutover_grace_period_s": req.post_cutover_grace_period_s,
    }
    if req.pre_deploy_checks is not None:
        overrides["pre_deploy_checks"] = tuple(parse_check(s) for s in req.pre_deploy_checks)
    config = DeployConfig.from_settings(**overrides)
    if req.retry_backoff_factor:
        config = replace(
            config,
            retry_policy=ExponentialBackoff(base_s=config.health_check_retry_delay_s, factor=req.retry_backoff_factor),
        )
    return config


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    app = FastAPI(title="Health-Gated Deployer")
    app.state.orchestrator = orchestrator or default_orchestrator()

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        recovered = app.state.orchestrator.recover()
        db.log_event("INFO", f"Deployer started; recovered {len(recovered)} interrupted attempt(s)")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/deployments", status_code=status.HTTP_202_ACCEPTED)
    def create_deployment(
        req: DeployRequest,
        orch: Orchestrator = Depends(_orchestrator),
        username: str = Depends(require_admin),
    ) -> dict[str, Any]:
        try:
            release = build_release(req)
            config = build_config(req)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        try:
            attempt = orch.deploy(release, config, wait=req.wait)
        except ConcurrentDeploymentError as e:
            raise HTTPException(status_code=409, detail=e.message) from e
        db.log_event("INFO", f"Deployment requested by {username}", environment=release.environment, attempt_id=attempt.id)
        return attempt.to_dict()

    @app.get("/deployments")
    def list_deployments(environment: str | None = None, orch: Orchestrator = Depends(_orchestrator)) -> list[dict[str, Any]]:
        return [a.to_dict() for a in orch.list_attempts(environment)]

    @app.get("/deployments/{attempt_id}")
    def get_deployment(attempt_id: str, orch: Orchestrator = Depends(_orchestrator)) -> dict[str, Any]:
        try:
            return orch.get_status(attempt_id).to_dict()
        except KeyError as e:
            raise HTTPException(status_code=404, detail="Unknown deployment") from e

    @app.post("/deployments/{attempt_id}/cancel")
    def cancel_deployment(
        attempt_id: str,
        orch: Orchestrator = Depends(_orchestrator),
        username: str = Depends(require_admin),
    ) -> dict[str, Any]:
        try:
            attempt = orch.cancel(attempt_id)
        except KeyError as e:
            raise HTTPException(status_code=404, detail="Unknown or detached deployment") from e
        except AlreadyTerminalError as e:
            raise HTTPException(status_code=409, detail=e.message) from e
        db.log_event("INFO", f"Cancel requested by {username}", environment=attempt.environment, attempt_id=attempt_id)
        return attempt.to_dict()

    @app.get("/environments/{environment}/backup")
    def environment_backup(environment: str) -> dict[str, Any]:
        row = db.last_backup(environment)
        if row is None:
            raise HTTPException(status_code=404, detail="No backup recorded for this environment")
        return {
            "environment": row.environment,
            "backup_ref": row.backup_ref,
            "attempt_id": row.attempt_id,
            "status": row.status,
            "created_at": row.created_at,
        }

    @app.get("/events")
    def events(limit: int = 100, environment: str | None = None, attempt_id: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(1000, limit)), environment=environment, attempt_id=attempt_id)

    return app
