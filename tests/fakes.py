"""Fake collaborators for orchestrator tests."""
from __future__ import annotations

import copy
import time
from threading import Event

from hgd import db
from hgd.errors import ArtifactNotFound
from hgd.health import ProbeResult
from hgd.runtime import InstanceSet, Release, ResolvedArtifact, Strategy

AUTO_REF = "<auto>"


class FakeImageSource:
    def __init__(self, missing: tuple[str, ...] = ()):
        self.missing = set(missing)
        self.calls: list[str] = []

    def resolve(self, artifact_ref: str) -> ResolvedArtifact:
        self.calls.append(artifact_ref)
        if artifact_ref in self.missing:
            raise ArtifactNotFound(f"Image {artifact_ref!r} not found")
        return ResolvedArtifact(ref=artifact_ref, image_id=f"sha256:{artifact_ref}")


class FakeController:
    """In-memory runtime: per environment, the live slot and the instances in each slot."""

    MUTATING = {"apply", "restore", "shift_traffic", "stop"}

    def __init__(self) -> None:
        self.envs: dict[str, dict] = {}
        self.snapshots: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.times: dict[str, list[float]] = {}
        self.backup_seen_at_apply: list[object] = []
        self.fail: set[str] = set()
        self.snapshot_ref: str | None = AUTO_REF
        self._n = 0

    def seed(self, environment: str, image: str = "app:1", slot: str = "blue", count: int = 1) -> None:
        ids = [f"{environment}-{slot}-old-{i}" for i in range(count)]
        self.envs[environment] = {"live": slot, "slots": {slot: ids}, "images": {slot: image}}

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        self.times.setdefault(name, []).append(time.monotonic())
        if name in self.fail:
            raise RuntimeError(f"{name} exploded")

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def mutations(self) -> list[str]:
        return [n for n in self.names() if n in self.MUTATING]

    def _env(self, environment: str) -> dict:
        return self.envs.setdefault(environment, {"live": None, "slots": {}, "images": {}})

    def _set(self, environment: str, slot: str) -> InstanceSet:
        ids = tuple(self._env(environment)["slots"].get(slot, []))
        return InstanceSet(
            environment=environment,
            slot=slot,
            instance_ids=ids,
            base_urls=tuple(f"http://{i}:3000" for i in ids),
        )

    def current(self, environment: str) -> InstanceSet:
        self._record("current", environment)
        live = self._env(environment)["live"]
        return self._set(environment, live) if live else InstanceSet(environment=environment, slot="blue")

    def snapshot(self, environment: str) -> str:
        self._record("snapshot", environment)
        self._n += 1
        ref = f"snap-{environment}-{self._n}" if self.snapshot_ref == AUTO_REF else self.snapshot_ref
        self.snapshots[ref] = copy.deepcopy(self._env(environment))
        return ref

    def apply(self, environment: str, artifact: ResolvedArtifact, release: Release) -> InstanceSet:
        self.backup_seen_at_apply.append(db.last_backup(environment))
        self._record("apply", environment, artifact.ref, release.strategy)
        env = self._env(environment)
        live = env["live"]
        if release.strategy == Strategy.BLUE_GREEN:
            slot = "green" if live == "blue" else "blue"
        else:
            slot = live or "blue"
            env["slots"] = {}
            env["images"] = {}
            env["live"] = slot
        env["slots"][slot] = [f"{environment}-{slot}-new-{i}" for i in range(release.replicas)]
        env["images"][slot] = artifact.ref
        return self._set(environment, slot)

    def restore(self, environment: str, backup_ref: str) -> None:
        self._record("restore", environment, backup_ref)
        self.envs[environment] = copy.deepcopy(self.snapshots[backup_ref])

    def shift_traffic(self, environment: str, target: InstanceSet) -> None:
        self._record("shift_traffic", environment, target.slot)
        self._env(environment)["live"] = target.slot

    def stop(self, environment: str, instances: InstanceSet) -> None:
        self._record("stop", environment, instances.slot)
        env = self._env(environment)
        remaining = [i for i in env["slots"].get(instances.slot, []) if i not in instances.instance_ids]
        if remaining:
            env["slots"][instances.slot] = remaining
        else:
            env["slots"].pop(instances.slot, None)
            env["images"].pop(instances.slot, None)


class ScriptedProber:
    """Returns scripted results in order, repeating the last one.

    A result of "hang" blocks until `release` is set (or `hang_s` passes);
    "raise" raises.
    """

    def __init__(self, *results, hang_s: float = 5.0):
        self.results = list(results) or [ProbeResult.HEALTHY]
        self.calls: list[tuple[str, str, float]] = []
        self.times: list[float] = []
        self.entered = Event()
        self.release = Event()
        self.hang_s = hang_s

    def probe(self, environment: str, endpoint: str, timeout_s: float):
        idx = min(len(self.calls), len(self.results) - 1)
        self.calls.append((environment, endpoint, timeout_s))
        self.times.append(time.monotonic())
        self.entered.set()
        result = self.results[idx]
        if result == "hang":
            self.release.wait(self.hang_s)
            return ProbeResult.HEALTHY
        if result == "raise":
            raise ConnectionError("probe exploded")
        return result


def wait_terminal(orch, attempt_id: str, timeout_s: float = 5.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        attempt = orch.get_status(attempt_id)
        # Terminal and the environment lock given back.
        if attempt.terminal and orch.registry.active_attempt(attempt.environment) != attempt_id:
            return attempt
        time.sleep(0.01)
    raise AssertionError(f"attempt {attempt_id} not terminal after {timeout_s}s")

