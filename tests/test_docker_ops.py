import itertools
from types import SimpleNamespace

import pytest
from docker.errors import ImageNotFound, NotFound

from hgd import db, docker_ops
from hgd.docker_ops import (
    DockerImageSource,
    DockerRuntimeController,
    other_slot,
    validate_environment,
    validate_health_path,
)
from hgd.errors import ArtifactNotFound
from hgd.health import ProbeResult
from hgd.orchestrator import Orchestrator
from hgd.runtime import AttemptState, DeployConfig, Release, ResolvedArtifact, Strategy
from hgd.settings import Settings

from fakes import ScriptedProber


_ids = itertools.count(1)


class FakeContainer:
    def __init__(self, client, image, name, labels, env):
        self.client = client
        self.id = f"c{next(_ids):04d}"
        self.name = name
        self.labels = dict(labels)
        self.status = "running"
        self.image = SimpleNamespace(id=f"sha256:{image}", tags=[image])
        self.attrs = {"Config": {"Image": image, "Env": [f"{k}={v}" for k, v in env.items()]}}
        self.exec_calls = []
        self.exit_code = 0

    def remove(self, force=False):
        self.client.containers.items.pop(self.id, None)

    def start(self):
        self.status = "running"

    def exec_run(self, cmd):
        self.exec_calls.append(cmd)
        return SimpleNamespace(exit_code=self.exit_code, output=b"")


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.items = {}

    def run(self, image, detach=True, name=None, environment=None, network=None, labels=None, restart_policy=None):
        c = FakeContainer(self.client, image, name, labels or {}, environment or {})
        self.items[c.id] = c
        return c

    def get(self, key):
        for c in self.items.values():
            if key in (c.id, c.name):
                return c
        raise NotFound(f"No such container: {key}")

    def list(self, all=False, filters=None):
        wanted = dict(x.split("=", 1) for x in (filters or {}).get("label", []))
        return [c for c in self.items.values() if wanted.items() <= c.labels.items()]


class FakeImages:
    def __init__(self, local=(), remote=()):
        self.local = set(local)
        self.remote = set(remote)
        self.pulled = []

    def get(self, ref):
        if ref not in self.local:
            raise ImageNotFound(f"No such image: {ref}")
        return SimpleNamespace(id=f"sha256:{ref}", attrs={"RepoDigests": [f"{ref}@sha256:abc"]})

    def pull(self, ref):
        if ref not in self.remote:
            raise NotFound(f"manifest for {ref} not found")
        self.pulled.append(ref)
        self.local.add(ref)
        return SimpleNamespace(id=f"sha256:{ref}", attrs={})


class FakeNetworks:
    def __init__(self):
        self.names = set()

    def get(self, name):
        if name not in self.names:
            raise NotFound(name)
        return name

    def create(self, name, driver=None):
        self.names.add(name)


class FakeDocker:
    def __init__(self, images=None):
        self.containers = FakeContainers(self)
        self.images = images or FakeImages(local={"app:1", "app:2"})
        self.networks = FakeNetworks()

    def ping(self):
        return True


@pytest.fixture
def fake_docker(monkeypatch):
    client = FakeDocker()
    monkeypatch.setattr(docker_ops, "_client", lambda: client)
    monkeypatch.setattr(docker_ops, "settings", Settings(docker_network="hgd-test"))
    return client


def _seed_blue(client, environment="staging", count=1):
    for i in range(count):
        client.containers.run(
            "app:1",
            name=f"hgd-{environment}-blue-{i}",
            labels={
                docker_ops.LABEL_ENV: environment,
                docker_ops.LABEL_SLOT: "blue",
                docker_ops.LABEL_ARTIFACT: "app:1",
                docker_ops.LABEL_PORT: "3000",
            },
            environment={"NODE_ENV": "staging"},
        )
    db.set_traffic_slot(environment, "blue")


def _slots(client, environment="staging"):
    return sorted(c.labels[docker_ops.LABEL_SLOT] for c in client.containers.list(all=True, filters={"label": [f"{docker_ops.LABEL_ENV}={environment}"]}))


def test_validation_helpers():
    validate_environment("staging")
    with pytest.raises(ValueError):
        validate_environment("Staging!")
    validate_health_path("/api/health")
    for bad in ("health", "http://x/health", "/../etc"):
        with pytest.raises(ValueError):
            validate_health_path(bad)
    assert other_slot(None) == "blue"
    assert other_slot("blue") == "green"
    assert other_slot("green") == "blue"


def test_resolve_local_image(fake_docker):
    art = DockerImageSource().resolve("app:1")
    assert art == ResolvedArtifact(ref="app:1", image_id="sha256:app:1", digest="app:1@sha256:abc")
    assert fake_docker.images.pulled == []


def test_resolve_pulls_missing_image(fake_docker):
    fake_docker.images.remote.add("app:3")
    art = DockerImageSource().resolve("app:3")
    assert art.ref == "app:3"
    assert fake_docker.images.pulled == ["app:3"]


def test_resolve_unknown_image(fake_docker):
    with pytest.raises(ArtifactNotFound):
        DockerImageSource().resolve("app:404")


def test_blue_green_apply_starts_idle_slot_alongside(fake_docker):
    _seed_blue(fake_docker)
    ctl = DockerRuntimeController()
    release = Release(artifact_ref="app:2", environment="staging", strategy=Strategy.BLUE_GREEN, replicas=2, port=8080)

    new = ctl.apply("staging", ResolvedArtifact("app:2", "sha256:app:2"), release)

    assert new.slot == "green"
    assert len(new.instance_ids) == 2
    assert all(u.startswith("http://hgd-staging-green-") and u.endswith(":8080") for u in new.base_urls)
    assert _slots(fake_docker) == ["blue", "green", "green"]
    # Traffic stays on blue until the cutover.
    assert db.get_traffic_slot("staging") == "blue"
    assert "hgd-test" in fake_docker.networks.names


def test_direct_apply_replaces_in_place(fake_docker):
    _seed_blue(fake_docker, count=2)
    ctl = DockerRuntimeController()
    release = Release(artifact_ref="app:2", environment="staging")

    new = ctl.apply("staging", ResolvedArtifact("app:2", "sha256:app:2"), release)

    assert new.slot == "blue"
    assert _slots(fake_docker) == ["blue"]
    assert [c.labels[docker_ops.LABEL_ARTIFACT] for c in fake_docker.containers.items.values()] == ["app:2"]
    assert db.get_traffic_slot("staging") == "blue"


def test_current_reports_live_slot(fake_docker):
    _seed_blue(fake_docker)
    current = DockerRuntimeController().current("staging")
    assert current.slot == "blue"
    assert current.base_urls == ("http://hgd-staging-blue-0:3000",)
    assert DockerRuntimeController().current("empty").empty


def test_restore_brings_back_snapshot(fake_docker):
    _seed_blue(fake_docker)
    ctl = DockerRuntimeController()
    ref = ctl.snapshot("staging")
    old_name = next(iter(fake_docker.containers.items.values())).name

    release = Release(artifact_ref="app:2", environment="staging")
    ctl.apply("staging", ResolvedArtifact("app:2", "sha256:app:2"), release)
    assert [c.name for c in fake_docker.containers.items.values()] != [old_name]

    ctl.restore("staging", ref)

    containers = list(fake_docker.containers.items.values())
    assert [c.name for c in containers] == [old_name]
    assert containers[0].attrs["Config"]["Image"] == "app:1"
    assert containers[0].attrs["Config"]["Env"] == ["NODE_ENV=staging"]
    assert db.get_traffic_slot("staging") == "blue"


def test_restore_unknown_snapshot_raises(fake_docker):
    with pytest.raises(RuntimeError):
        DockerRuntimeController().restore("staging", "snap-missing")


def test_shift_traffic_reloads_proxy(fake_docker, monkeypatch):
    proxy = fake_docker.containers.run("nginx:1", name="edge", labels={})
    monkeypatch.setattr(docker_ops, "settings", Settings(docker_network="hgd-test", proxy_container="edge"))
    ctl = DockerRuntimeController()
    target = docker_ops.InstanceSet(environment="staging", slot="green")

    ctl.shift_traffic("staging", target)

    assert db.get_traffic_slot("staging") == "green"
    assert proxy.exec_calls == [["nginx", "-s", "reload"]]

    proxy.exit_code = 1
    with pytest.raises(RuntimeError):
        ctl.shift_traffic("staging", target)


def _docker_orchestrator(prober):
    return Orchestrator(DockerImageSource(), DockerRuntimeController(), prober, notifier=None)


def _fast_config(**kw):
    values = dict(health_check_max_retries=2, health_check_retry_delay_s=0, post_cutover_grace_period_s=0)
    values.update(kw)
    return DeployConfig(**values)


def test_blue_green_end_to_end_on_docker(fake_docker):
    _seed_blue(fake_docker)
    prober = ScriptedProber(ProbeResult.HEALTHY)
    release = Release(artifact_ref="app:2", environment="staging", strategy=Strategy.BLUE_GREEN)

    attempt = _docker_orchestrator(prober).deploy(release, _fast_config())

    assert attempt.state == AttemptState.SUCCEEDED
    assert _slots(fake_docker) == ["green"]
    assert db.get_traffic_slot("staging") == "green"
    assert prober.calls[0][1].endswith(":3000/health")


def test_unhealthy_release_is_rolled_back_on_docker(fake_docker):
    _seed_blue(fake_docker)
    before = sorted(c.name for c in fake_docker.containers.items.values())
    release = Release(artifact_ref="app:2", environment="staging", strategy=Strategy.BLUE_GREEN)

    attempt = _docker_orchestrator(ScriptedProber(ProbeResult.UNHEALTHY)).deploy(release, _fast_config())

    assert attempt.state == AttemptState.ROLLED_BACK
    assert sorted(c.name for c in fake_docker.containers.items.values()) == before
    assert db.get_traffic_slot("staging") == "blue"
