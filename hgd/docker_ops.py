from __future__ import annotations

import secrets
import shlex
from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from . import db
from .db import log_event
from .errors import ArtifactNotFound
from .runtime import InstanceSet, Release, ResolvedArtifact, Strategy, validate_environment, validate_health_path
from .settings import settings


LABEL_ENV = "hgd.environment"
LABEL_SLOT = "hgd.slot"
LABEL_ARTIFACT = "hgd.artifact"
LABEL_PORT = "hgd.port"

SLOTS = ("blue", "green")


def other_slot(slot: str | None) -> str:
    if slot is None:
        return SLOTS[0]
    return SLOTS[1] if slot == SLOTS[0] else SLOTS[0]


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


def run_container(
    image: str,
    name: str,
    labels: dict[str, str],
    env: dict[str, str] | None = None,
) -> ContainerRef:
    """Create and start a container attached to the deployer network.

    Containers are labeled so they can be re-discovered after restarts.
    """
    c = _client()
    container = c.containers.run(
        image,
        detach=True,
        name=name,
        environment=env or {},
        network=settings.docker_network,
        labels=labels,
        # Restarts are the orchestrator's decision; keep Docker's restart policy off.
        restart_policy={"Name": "no"},
    )
    log_event("INFO", f"Started container {name} from image {image}", environment=labels.get(LABEL_ENV))
    return ContainerRef(id=container.id, name=name)


def remove_container(container_id: str, force: bool = True) -> None:
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.remove(force=force)
    except NotFound:
        return


def list_environment_containers(environment: str, slot: str | None = None) -> list[Any]:
    c = _client()
    label_filters = [f"{LABEL_ENV}={environment}"]
    if slot:
        label_filters.append(f"{LABEL_SLOT}={slot}")
    return c.containers.list(all=True, filters={"label": label_filters})


def _env_list_to_dict(items: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items or []:
        k, _, v = item.partition("=")
        out[k] = v
    return out


class DockerImageSource:
    """Resolves an image reference locally, pulling it when missing."""

    def resolve(self, artifact_ref: str) -> ResolvedArtifact:
        c = _client()
        try:
            image = c.images.get(artifact_ref)
        except ImageNotFound:
            try:
                image = c.images.pull(artifact_ref)
            except (ImageNotFound, NotFound) as e:
                raise ArtifactNotFound(f"Image {artifact_ref!r} not found", cause=e) from e
            log_event("INFO", f"Pulled image {artifact_ref}")
        digests = image.attrs.get("RepoDigests") or []
        return ResolvedArtifact(ref=artifact_ref, image_id=image.id, digest=digests[0] if digests else None)


class DockerRuntimeController:
    """Runs an environment as labeled containers split into blue/green slots.

    The slot receiving traffic is persisted per environment; snapshots record
    every container of the environment plus that slot.
    """

    def active_slot(self, environment: str) -> str | None:
        slot = db.get_traffic_slot(environment)
        if slot:
            return slot
        for cont in list_environment_containers(environment):
            s = cont.labels.get(LABEL_SLOT)
            if s:
                return s
        return None

    def _instance_set(self, environment: str, slot: str, containers: list[Any]) -> InstanceSet:
        ids: list[str] = []
        urls: list[str] = []
        for cont in containers:
            ids.append(cont.id)
            port = cont.labels.get(LABEL_PORT)
            if port:
                urls.append(container_http_base(cont.name, int(port)))
        return InstanceSet(environment=environment, slot=slot, instance_ids=tuple(ids), base_urls=tuple(urls))

    def current(self, environment: str) -> InstanceSet:
        slot = self.active_slot(environment)
        if slot is None:
            return InstanceSet(environment=environment, slot=SLOTS[0])
        return self._instance_set(environment, slot, list_environment_containers(environment, slot))

    def snapshot(self, environment: str) -> str:
        containers = []
        for cont in list_environment_containers(environment):
            config = cont.attrs.get("Config", {})
            containers.append(
                {
                    "id": cont.id,
                    "name": cont.name,
                    "image": config.get("Image") or (cont.image.tags[0] if cont.image.tags else cont.image.id),
                    "labels": dict(cont.labels),
                    "env": _env_list_to_dict(config.get("Env")),
                    "status": cont.status,
                }
            )
        ref = f"snap-{environment}-{secrets.token_hex(6)}"
        db.save_snapshot(ref, environment, {"traffic_slot": db.get_traffic_slot(environment), "containers": containers})
        log_event("INFO", f"Snapshot {ref} captured {len(containers)} container(s)", environment=environment)
        return ref

    def apply(self, environment: str, artifact: ResolvedArtifact, release: Release) -> InstanceSet:
        validate_environment(environment)
        validate_health_path(release.health_path)
        ensure_network()

        active = self.active_slot(environment)
        if release.strategy == Strategy.BLUE_GREEN:
            slot = other_slot(active) if active else SLOTS[0]
            # Leftovers from an earlier failed attempt in the idle slot.
            for cont in list_environment_containers(environment, slot):
                remove_container(cont.id)
        else:
            slot = active or SLOTS[0]
            for cont in list_environment_containers(environment):
                remove_container(cont.id)
            log_event("INFO", "Stopped existing containers", environment=environment)

        started: list[Any] = []
        c = _client()
        for _ in range(max(1, int(release.replicas))):
            name = f"hgd-{environment}-{slot}-{secrets.token_hex(3)}"
            labels = {
                LABEL_ENV: environment,
                LABEL_SLOT: slot,
                LABEL_ARTIFACT: artifact.ref,
                LABEL_PORT: str(int(release.port)),
            }
            ref = run_container(artifact.ref, name, labels, env=dict(release.env))
            started.append(c.containers.get(ref.id))

        if release.strategy == Strategy.DIRECT:
            db.set_traffic_slot(environment, slot)
        return self._instance_set(environment, slot, started)

    def restore(self, environment: str, backup_ref: str) -> None:
        snap = db.load_snapshot(backup_ref)
        if snap is None:
            raise RuntimeError(f"Unknown snapshot {backup_ref!r}")
        wanted = {x["id"]: x for x in snap["containers"]}

        c = _client()
        for cont in list_environment_containers(environment):
            if cont.id not in wanted:
                cont.remove(force=True)

        for cid, spec in wanted.items():
            try:
                cont = c.containers.get(cid)
            except NotFound:
                ref = run_container(spec["image"], spec["name"], spec["labels"], env=spec["env"])
                log_event("INFO", f"Re-created {spec['name']} as {ref.id[:12]}", environment=environment)
                continue
            if spec.get("status") == "running" and cont.status != "running":
                cont.start()

        self._set_traffic(environment, snap.get("traffic_slot"))
        log_event("INFO", f"Restored environment from {backup_ref}", environment=environment)

    def shift_traffic(self, environment: str, target: InstanceSet) -> None:
        self._set_traffic(environment, target.slot)
        log_event("INFO", f"Traffic switched to slot {target.slot}", environment=environment)

    def stop(self, environment: str, instances: InstanceSet) -> None:
        for cid in instances.instance_ids:
            remove_container(cid, force=True)
        log_event("INFO", f"Stopped {len(instances.instance_ids)} instance(s) in slot {instances.slot}", environment=environment)

    def _set_traffic(self, environment: str, slot: str | None) -> None:
        db.set_traffic_slot(environment, slot)
        if not settings.proxy_container or slot is None:
            return
        try:
            proxy = _client().containers.get(settings.proxy_container)
            result = proxy.exec_run(shlex.split(settings.proxy_reload_command))
        except APIError as e:
            raise RuntimeError(f"Proxy reload failed: {e}") from e
        if result.exit_code != 0:
            raise RuntimeError(f"Proxy reload exited with {result.exit_code}: {result.output!r}")
