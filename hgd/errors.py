from __future__ import annotations


class DeploymentError(Exception):
    """Base class for failures the orchestrator records as an attempt's cause."""

    kind = "DeploymentError"

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.__cause__ = cause

    def as_cause(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class PreflightFailure(DeploymentError):
    """A pre-deploy check failed or the artifact could not be resolved. Nothing was mutated."""

    kind = "PreflightFailure"


class BackupFailure(DeploymentError):
    """The environment snapshot could not be taken. Nothing was mutated."""

    kind = "BackupFailure"


class DeployFailure(DeploymentError):
    kind = "DeployFailure"


class HealthCheckExhausted(DeploymentError):
    kind = "HealthCheckExhausted"


class CutoverFailure(DeploymentError):
    kind = "CutoverFailure"


class RollbackFailure(DeploymentError):
    """Restore from the backup failed. Operator intervention is required."""

    kind = "RollbackFailure"


class Cancelled(DeploymentError):
    kind = "Cancelled"


class ConcurrentDeploymentError(DeploymentError):
    kind = "ConcurrentDeploymentError"


class AlreadyTerminalError(DeploymentError):
    kind = "AlreadyTerminalError"


class ArtifactNotFound(DeploymentError):
    kind = "ArtifactNotFound"


class Interrupted(DeploymentError):
    """The process running the attempt stopped before the attempt finished."""

    kind = "Interrupted"
