from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

import httpx


HEALTHY_STATUSES = {"ok", "healthy", "up", "ready"}


class ProbeResult(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


def check_health(
    url: str, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None
) -> tuple[ProbeResult, str, float | None]:
    """Call a service health endpoint.

    Healthy means HTTP 200 and, when the body is JSON, a "status" (or "health")
    of ok/healthy/up/ready. A non-JSON 200 body is accepted as healthy.
    Returns (result, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return ProbeResult.UNHEALTHY, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return ProbeResult.HEALTHY, "Healthy (non-JSON body)", latency_ms
        status = None
        if isinstance(data, dict):
            status = data.get("status", data.get("health"))
        if isinstance(status, str) and status.strip().lower() in HEALTHY_STATUSES:
            return ProbeResult.HEALTHY, "Healthy", latency_ms
        return ProbeResult.UNHEALTHY, f"Unhealthy payload: {data!r}", latency_ms
    except httpx.TimeoutException:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult.TIMED_OUT, "Timed out", latency_ms
    except httpx.ConnectError:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult.UNHEALTHY, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult.UNHEALTHY, f"Error: {type(e).__name__}: {e}", latency_ms


class HttpHealthProber:
    """Health prober that GETs the endpoint URL."""

    def __init__(self, transport: httpx.BaseTransport | None = None):
        self.transport = transport
        self.last_message: str | None = None

    def probe(self, environment: str, endpoint: str, timeout_s: float) -> ProbeResult:
        result, msg, _latency = check_health(endpoint, timeout_s=timeout_s, transport=self.transport)
        self.last_message = msg
        return result


# --- retry policies ---


@dataclass(frozen=True)
class FixedDelay:
    delay_s: float

    def delay(self, probe_number: int) -> float:
        return max(0.0, self.delay_s)


@dataclass(frozen=True)
class ExponentialBackoff:
    """base_s * factor**(n-1), capped at max_s. probe_number starts at 1."""

    base_s: float = 1.0
    factor: float = 2.0
    max_s: float = 60.0

    def delay(self, probe_number: int) -> float:
        n = max(1, int(probe_number))
        if self.base_s <= 0:
            return 0.0
        try:
            raw = self.base_s * (float(self.factor) ** (n - 1))
        except OverflowError:
            return max(0.0, self.max_s)
        return max(0.0, min(self.max_s, raw))
