from __future__ import annotations

import time

import httpx

from .slots import HealthVerdict

HEALTHY_PAYLOAD_STATUSES = {"healthy", "up", "ok"}


def check_health(url: str, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None) -> HealthVerdict:
    """Call a service health endpoint once.

    Expected JSON: {"status": "healthy"} (Spring-style {"status": "UP"} is accepted too).
    Connection problems and unparseable bodies produce an ``unknown`` verdict;
    a reachable service answering anything else is ``unhealthy``.
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return HealthVerdict.unhealthy(f"HTTP {resp.status_code}", latency_ms)
        try:
            data = resp.json()
        except ValueError:
            return HealthVerdict.unknown("Invalid JSON", latency_ms)
        status = data.get("status") if isinstance(data, dict) else None
        if isinstance(status, str) and status.strip().lower() in HEALTHY_PAYLOAD_STATUSES:
            return HealthVerdict.healthy("Healthy", latency_ms)
        return HealthVerdict.unhealthy(f"Unhealthy payload: {data!r}", latency_ms)
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return HealthVerdict.unknown("No response", latency_ms)
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return HealthVerdict.unknown(f"Error: {type(e).__name__}: {e}", latency_ms)


class HttpHealthProbe:
    """Single synchronous probe per call; retry policy belongs to the caller."""

    def __init__(self, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None):
        self.timeout_s = timeout_s
        self.transport = transport

    def check(self, endpoint: str) -> HealthVerdict:
        return check_health(endpoint, timeout_s=self.timeout_s, transport=self.transport)
