from __future__ import annotations

import secrets
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from threading import Condition, Lock, Thread
from typing import Callable, Protocol

from . import db
from .alerts import notify_outcome
from .checks import check_name
from .errors import (
    AlreadyTerminalError,
    ArtifactNotFound,
    BackupFailure,
    Cancelled,
    ConcurrentDeploymentError,
    CutoverFailure,
    DeployFailure,
    DeploymentError,
    HealthCheckExhausted,
    Interrupted,
    PreflightFailure,
    RollbackFailure,
)
from .health import ProbeResult
from .runtime import (
    MUTATING_STATES,
    OUTCOME_FOR_STATE,
    TERMINAL_STATES,
    AttemptRegistry,
    AttemptState,
    DeployConfig,
    DeploymentAttempt,
    InstanceSet,
    Release,
    ResolvedArtifact,
    Strategy,
    utc_now,
    validate_environment,
    validate_health_path,
)


class ImageSource(Protocol):
    def resolve(self, artifact_ref: str) -> ResolvedArtifact: ...


class RuntimeController(Protocol):
    def current(self, environment: str) -> InstanceSet: ...

    def snapshot(self, environment: str) -> str: ...

    def apply(self, environment: str, artifact: ResolvedArtifact, release: Release) -> InstanceSet: ...

    def restore(self, environment: str, backup_ref: str) -> None: ...

    def shift_traffic(self, environment: str, target: InstanceSet) -> None: ...

    def stop(self, environment: str, instances: InstanceSet) -> None: ...


class HealthProber(Protocol):
    def probe(self, environment: str, endpoint: str, timeout_s: float) -> ProbeResult: ...


@dataclass
class _Run:
    """Mutable bookkeeping for one attempt while its runner thread is alive."""

    attempt: DeploymentAttempt
    config: DeployConfig
    cond: Condition = field(default_factory=Condition)
    cancelled: bool = False
    artifact: ResolvedArtifact | None = None
    old: InstanceSet | None = None
    new: InstanceSet | None = None
    pool: ThreadPoolExecutor | None = None

    def wake(self) -> None:
        with self.cond:
            self.cond.notify_all()


class Orchestrator:
    """Drives one release per environment through a health-gated deployment.

    PENDING -> VALIDATING -> BACKING_UP -> DEPLOYING -> HEALTH_CHECKING
    -> [CUTTING_OVER] -> SUCCEEDED. Failures before DEPLOYING end FAILED with
    nothing mutated; failures from DEPLOYING on go through ROLLING_BACK, which
    restores the backup once and ends ROLLED_BACK, or FAILED if the restore fails.
    """

    def __init__(
        self,
        image_source: ImageSource,
        controller: RuntimeController,
        prober: HealthProber,
        notifier: Callable[[DeploymentAttempt], object] | None = notify_outcome,
        registry: AttemptRegistry | None = None,
    ):
        self.image_source = image_source
        self.controller = controller
        self.prober = prober
        self.notifier = notifier
        self.registry = registry or AttemptRegistry()
        self._lock = Lock()
        self._runs: dict[str, _Run] = {}

    # --- public surface ---

    def deploy(self, release: Release, config: DeployConfig | None = None, wait: bool = True) -> DeploymentAttempt:
        config = config or DeployConfig.from_settings()
        attempt_id = secrets.token_hex(8)
        env = release.environment

        if not self.registry.claim_environment(env, attempt_id):
            active = self.registry.active_attempt(env)
            db.log_event("WARN", f"Rejected deployment of {release.artifact_ref}: {active} in progress", environment=env)
            raise ConcurrentDeploymentError(f"Deployment {active} is in progress for environment '{env}'")

        attempt = DeploymentAttempt(id=attempt_id, release=release)
        attempt.history.append((attempt.state.value, attempt.started_at))
        run = _Run(attempt=attempt, config=config)
        try:
            with self._lock:
                self._runs[attempt_id] = run
            self._publish(attempt)
        except Exception:
            with self._lock:
                self._runs.pop(attempt_id, None)
            self.registry.release_environment(env, attempt_id)
            raise
        db.log_event(
            "INFO",
            f"Deployment of {release.artifact_ref} ({release.strategy.value}) created",
            environment=env,
            attempt_id=attempt_id,
        )

        if wait:
            self._run(run)
            return self.get_status(attempt_id)

        Thread(target=self._run, args=(run,), daemon=True, name=f"deploy-{attempt_id}").start()
        return attempt.copy()

    def get_status(self, attempt_id: str) -> DeploymentAttempt:
        attempt = self.registry.get(attempt_id)
        if attempt:
            return attempt
        data = db.load_attempt(attempt_id)
        if data is None:
            raise KeyError(f"unknown deployment attempt {attempt_id}")
        return DeploymentAttempt.from_dict(data)

    def list_attempts(self, environment: str | None = None) -> list[DeploymentAttempt]:
        return [DeploymentAttempt.from_dict(d) for d in db.list_attempts(environment)]

    def cancel(self, attempt_id: str) -> DeploymentAttempt:
        with self._lock:
            run = self._runs.get(attempt_id)
        if run is None:
            attempt = self.get_status(attempt_id)
            if attempt.terminal:
                raise AlreadyTerminalError(f"Deployment {attempt_id} already ended {attempt.state.value}")
            raise KeyError(f"deployment attempt {attempt_id} is not running in this process")

        with run.cond:
            if run.attempt.terminal:
                raise AlreadyTerminalError(f"Deployment {attempt_id} already ended {run.attempt.state.value}")
            run.cancelled = True
            run.cond.notify_all()
        db.log_event("WARN", "Cancellation requested", environment=run.attempt.environment, attempt_id=attempt_id)
        return self.get_status(attempt_id)

    def recover(self) -> list[DeploymentAttempt]:
        """Finish attempts a previous process left non-terminal.

        Attempts that had started mutating the runtime are rolled back from
        their persisted backup; the others simply end FAILED.
        """
        open_states = [s.value for s in AttemptState if s not in TERMINAL_STATES]
        recovered: list[DeploymentAttempt] = []
        for data in db.list_attempts(states=open_states):
            attempt = DeploymentAttempt.from_dict(data)
            with self._lock:
                if attempt.id in self._runs:
                    continue
            env = attempt.environment
            reason = Interrupted(f"Deployer stopped while attempt was {attempt.state.value}")
            db.log_event("WARN", f"Recovering interrupted attempt ({attempt.state.value})", environment=env, attempt_id=attempt.id)

            if attempt.state in MUTATING_STATES and attempt.backup_ref:
                attempt.trigger = reason.as_cause()
                if attempt.state != AttemptState.ROLLING_BACK:
                    self._transition(attempt, AttemptState.ROLLING_BACK)
                err = self._restore(attempt)
                if err is not None:
                    self._finish(attempt, AttemptState.FAILED, err)
                else:
                    self._finish(attempt, AttemptState.ROLLED_BACK, reason)
            else:
                if attempt.backup_ref:
                    db.set_backup_status(attempt.backup_ref, "released")
                self._finish(attempt, AttemptState.FAILED, reason)
            self._notify(attempt)
            recovered.append(attempt.copy())
        return recovered

    # --- state machine ---

    def _run(self, run: _Run) -> None:
        attempt = run.attempt
        try:
            self._execute(run)
        except Exception as e:
            # Orchestration bug or lost database; the attempt must still end terminal.
            db.log_event(
                "ERROR",
                f"Orchestrator error: {type(e).__name__}: {e}",
                environment=attempt.environment,
                attempt_id=attempt.id,
            )
            with run.cond:
                if not attempt.terminal:
                    attempt.state = AttemptState.FAILED
                    attempt.outcome = OUTCOME_FOR_STATE[AttemptState.FAILED]
                    attempt.ended_at = utc_now()
                    attempt.cause = {"kind": "InternalError", "message": f"{type(e).__name__}: {e}"}
                    self.registry.release_environment(attempt.environment, attempt.id)
                    self.registry.put(attempt.copy())
        finally:
            if run.pool:
                run.pool.shutdown(wait=False, cancel_futures=True)
            with self._lock:
                self._runs.pop(attempt.id, None)
            self.registry.release_environment(attempt.environment, attempt.id)
        self._notify(attempt)

    def _execute(self, run: _Run) -> None:
        attempt = run.attempt
        try:
            self._check_cancel(run)
            self._transition(attempt, AttemptState.VALIDATING)
            self._validate(run)
            self._check_cancel(run)
            self._transition(attempt, AttemptState.BACKING_UP)
            self._backup(run)
            self._check_cancel(run)
        except DeploymentError as e:
            if attempt.backup_ref:
                db.set_backup_status(attempt.backup_ref, "released")
            self._finish(attempt, AttemptState.FAILED, e)
            return

        try:
            self._transition(attempt, AttemptState.DEPLOYING)
            self._deploy(run)
            self._check_cancel(run)
            self._transition(attempt, AttemptState.HEALTH_CHECKING)
            self._health_check(run)
            if attempt.release.strategy == Strategy.BLUE_GREEN:
                self._transition(attempt, AttemptState.CUTTING_OVER)
                self._cut_over(run)
        except DeploymentError as e:
            self._rollback(run, e)
            return
        except Exception as e:
            # Past apply the runtime may be changed, so this too is undone.
            self._rollback(run, self._stage_failure(attempt.state, e))
            return

        db.set_backup_status(attempt.backup_ref, "released")
        self._finish(attempt, AttemptState.SUCCEEDED)

    def _validate(self, run: _Run) -> None:
        attempt = run.attempt
        try:
            validate_environment(attempt.environment)
            validate_health_path(attempt.release.health_path)
        except ValueError as e:
            raise PreflightFailure(str(e), cause=e) from e

        for check in run.config.pre_deploy_checks:
            name = check_name(check)
            try:
                ok = bool(check())
            except Exception as e:
                raise PreflightFailure(f"Pre-deploy check {name} raised {type(e).__name__}: {e}", cause=e) from e
            if not ok:
                raise PreflightFailure(f"Pre-deploy check {name} failed")
            db.log_event("INFO", f"Pre-deploy check {name} passed", environment=attempt.environment, attempt_id=attempt.id)

        ref = attempt.release.artifact_ref
        try:
            run.artifact = self.image_source.resolve(ref)
        except ArtifactNotFound as e:
            raise PreflightFailure(e.message, cause=e) from e
        except Exception as e:
            raise PreflightFailure(f"Could not resolve {ref}: {type(e).__name__}: {e}", cause=e) from e

    def _backup(self, run: _Run) -> None:
        attempt = run.attempt
        env = attempt.environment
        try:
            run.old = self.controller.current(env)
            ref = self.controller.snapshot(env)
        except Exception as e:
            raise BackupFailure(f"Snapshot of '{env}' failed: {type(e).__name__}: {e}", cause=e) from e
        if not ref:
            raise BackupFailure(f"Snapshot of '{env}' returned an empty backup reference")
        try:
            db.record_backup(env, ref, attempt.id)
        except Exception as e:
            raise BackupFailure(f"Could not persist backup {ref}: {type(e).__name__}: {e}", cause=e) from e
        attempt.backup_ref = ref
        self._publish(attempt)
        db.log_event("INFO", f"Backup {ref} created", environment=env, attempt_id=attempt.id)

    def _deploy(self, run: _Run) -> None:
        attempt = run.attempt
        release = attempt.release
        try:
            new = self.controller.apply(attempt.environment, run.artifact, release)
        except Exception as e:
            raise DeployFailure(f"Applying {release.artifact_ref} failed: {type(e).__name__}: {e}", cause=e) from e
        if new is None:
            # Controllers may only acknowledge; nothing is known about the new instances.
            new = InstanceSet(environment=attempt.environment, slot="")
            msg = f"Applied {release.artifact_ref}"
        else:
            msg = f"Started {len(new.instance_ids)} instance(s) of {release.artifact_ref} in slot {new.slot}"
        run.new = new
        db.log_event("INFO", msg, environment=attempt.environment, attempt_id=attempt.id)

    def _health_check(self, run: _Run) -> None:
        attempt = run.attempt
        cfg = run.config
        policy = cfg.effective_retry_policy()
        endpoints = run.new.endpoints(attempt.release.health_path) if run.new else []
        if not endpoints:
            # Controller exposes no addresses; the prober resolves the path itself.
            endpoints = [attempt.release.health_path]

        attempt.health_attempt_count = 0
        self._wait(run, cfg.health_check_initial_delay_s)
        for n in range(1, cfg.health_check_max_retries + 1):
            attempt.health_attempt_count = n
            results = [self._probe(run, ep) for ep in endpoints]
            healthy = all(r == ProbeResult.HEALTHY for r in results)
            self._publish(attempt)
            db.log_event(
                "INFO" if healthy else "WARN",
                f"Health probe {n}/{cfg.health_check_max_retries}: {', '.join(r.value for r in results)}",
                environment=attempt.environment,
                attempt_id=attempt.id,
            )
            if healthy:
                return
            if n < cfg.health_check_max_retries:
                self._wait(run, policy.delay(n))
        raise HealthCheckExhausted(
            f"New instances not healthy after {cfg.health_check_max_retries} probe(s)"
        )

    def _probe(self, run: _Run, endpoint: str) -> ProbeResult:
        attempt = run.attempt
        timeout = run.config.health_check_timeout_s
        if run.pool is None:
            run.pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"probe-{attempt.id}")
        fut = run.pool.submit(self.prober.probe, attempt.environment, endpoint, timeout)
        fut.add_done_callback(lambda _f: run.wake())
        with run.cond:
            run.cond.wait_for(lambda: fut.done() or run.cancelled, timeout=timeout)
        if run.cancelled:
            fut.cancel()
            self._check_cancel(run)
        if not fut.done():
            return ProbeResult.TIMED_OUT
        try:
            return ProbeResult(fut.result())
        except Exception as e:
            db.log_event(
                "WARN",
                f"Probe of {endpoint} raised {type(e).__name__}: {e}",
                environment=attempt.environment,
                attempt_id=attempt.id,
            )
            return ProbeResult.UNHEALTHY

    def _cut_over(self, run: _Run) -> None:
        attempt = run.attempt
        env = attempt.environment
        try:
            self.controller.shift_traffic(env, run.new)
        except Exception as e:
            raise CutoverFailure(f"Traffic shift failed: {type(e).__name__}: {e}", cause=e) from e
        db.log_event("INFO", f"Traffic shifted to slot {run.new.slot}", environment=env, attempt_id=attempt.id)

        self._wait(run, run.config.post_cutover_grace_period_s)

        if run.old is None or run.old.empty:
            return
        try:
            self.controller.stop(env, run.old)
        except Exception as e:
            raise CutoverFailure(f"Stopping old instances failed: {type(e).__name__}: {e}", cause=e) from e
        db.log_event("INFO", f"Stopped old instances in slot {run.old.slot}", environment=env, attempt_id=attempt.id)

    def _rollback(self, run: _Run, trigger: DeploymentError) -> None:
        attempt = run.attempt
        attempt.trigger = trigger.as_cause()
        db.log_event("ERROR", f"{trigger.kind}: {trigger.message}", environment=attempt.environment, attempt_id=attempt.id)
        self._transition(attempt, AttemptState.ROLLING_BACK)
        err = self._restore(attempt)
        if err is not None:
            self._finish(attempt, AttemptState.FAILED, err)
            return
        if run.new and not run.new.empty:
            try:
                self.controller.stop(attempt.environment, run.new)
            except Exception as e:
                db.log_event(
                    "WARN",
                    f"Could not stop new instances after restore: {type(e).__name__}: {e}",
                    environment=attempt.environment,
                    attempt_id=attempt.id,
                )
        self._finish(attempt, AttemptState.ROLLED_BACK, trigger)

    def _restore(self, attempt: DeploymentAttempt) -> RollbackFailure | None:
        """Restore the attempt's backup. Called once per attempt, never retried."""
        ref = attempt.backup_ref
        try:
            self.controller.restore(attempt.environment, ref)
        except Exception as e:
            err = RollbackFailure(
                f"Restore from {ref} failed: {type(e).__name__}: {e}. Manual intervention required.", cause=e
            )
            db.log_event("CRITICAL", err.message, environment=attempt.environment, attempt_id=attempt.id)
            return err
        db.set_backup_status(ref, "restored")
        db.log_event("INFO", f"Restored backup {ref}", environment=attempt.environment, attempt_id=attempt.id)
        return None

    # --- helpers ---

    def _stage_failure(self, state: AttemptState, e: Exception) -> DeploymentError:
        cls = CutoverFailure if state == AttemptState.CUTTING_OVER else DeployFailure
        return cls(f"Unexpected error during {state.value}: {type(e).__name__}: {e}", cause=e)

    def _check_cancel(self, run: _Run) -> None:
        if run.cancelled:
            run.attempt.cancel_requested = True
            raise Cancelled(f"Cancelled during {run.attempt.state.value}")

    def _wait(self, run: _Run, seconds: float) -> None:
        if seconds > 0:
            with run.cond:
                run.cond.wait_for(lambda: run.cancelled, timeout=seconds)
        self._check_cancel(run)

    def _transition(self, attempt: DeploymentAttempt, state: AttemptState) -> None:
        attempt.state = state
        attempt.history.append((state.value, utc_now()))
        self._publish(attempt)
        db.log_event("INFO", f"-> {state.value}", environment=attempt.environment, attempt_id=attempt.id)

    def _finish(self, attempt: DeploymentAttempt, state: AttemptState, error: DeploymentError | None = None) -> None:
        with self._lock:
            run = self._runs.get(attempt.id)
        # cancel() reads `terminal` under the same condition.
        with (run.cond if run else nullcontext()):
            if attempt.outcome is not None:
                raise RuntimeError(f"attempt {attempt.id} already has outcome {attempt.outcome.value}")
            attempt.state = state
            attempt.outcome = OUTCOME_FOR_STATE[state]
            attempt.ended_at = utc_now()
            attempt.history.append((state.value, attempt.ended_at))
            if error is not None:
                attempt.cause = error.as_cause()
            # Once terminal is visible the environment is free for the next deployment.
            self.registry.release_environment(attempt.environment, attempt.id)
            self._publish(attempt)
        level = {AttemptState.SUCCEEDED: "INFO", AttemptState.ROLLED_BACK: "WARN"}.get(state, "ERROR")
        msg = f"Deployment ended {state.value}"
        if attempt.cause:
            msg += f" ({attempt.cause['kind']}: {attempt.cause['message']})"
        if state == AttemptState.FAILED and attempt.backup_ref:
            msg += f"; backup {attempt.backup_ref} preserved"
        db.log_event(level, msg, environment=attempt.environment, attempt_id=attempt.id)

    def _publish(self, attempt: DeploymentAttempt) -> None:
        self.registry.put(attempt.copy())
        db.save_attempt(attempt)

    def _notify(self, attempt: DeploymentAttempt) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(attempt.copy())
        except Exception as e:
            db.log_event(
                "WARN",
                f"Notification failed: {type(e).__name__}: {e}",
                environment=attempt.environment,
                attempt_id=attempt.id,
            )
