"""Pre-deploy checks.

Each check is a callable returning True when the environment is fit for a
deployment. A check that returns False or raises fails the deployment before
anything is mutated.
"""
from __future__ import annotations

import os
import socket
from dataclasses import dataclass

from .docker_ops import docker_available


@dataclass(frozen=True)
class DockerReachable:
    name: str = "docker"

    def __call__(self) -> bool:
        return docker_available()


@dataclass(frozen=True)
class TcpReachable:
    host: str
    port: int
    timeout_s: float = 10.0

    @property
    def name(self) -> str:
        return f"tcp:{self.host}:{self.port}"

    def __call__(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout_s):
                return True
        except OSError:
            return False


@dataclass(frozen=True)
class PathExists:
    path: str

    @property
    def name(self) -> str:
        return f"path:{self.path}"

    def __call__(self) -> bool:
        return os.path.exists(self.path)


@dataclass(frozen=True)
class EnvVarSet:
    var: str

    @property
    def name(self) -> str:
        return f"env:{self.var}"

    def __call__(self) -> bool:
        return bool(os.getenv(self.var))


def check_name(check: object) -> str:
    return getattr(check, "name", None) or getattr(check, "__name__", None) or type(check).__name__


def parse_check(spec: str):
    """Build a check from "docker", "tcp:host:port", "path:/some/file" or "env:NAME"."""
    spec = spec.strip()
    kind, _, rest = spec.partition(":")
    if kind == "docker" and not rest:
        return DockerReachable()
    if kind == "tcp":
        host, _, port = rest.rpartition(":")
        if not host or not port.isdigit():
            raise ValueError(f"Invalid tcp check {spec!r}; expected tcp:host:port.")
        return TcpReachable(host=host, port=int(port))
    if kind == "path" and rest:
        return PathExists(rest)
    if kind == "env" and rest:
        return EnvVarSet(rest)
    raise ValueError(f"Unknown pre-deploy check {spec!r}. Use docker, tcp:host:port, path:<file> or env:<NAME>.")
