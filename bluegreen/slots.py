from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from enum import Enum


class Slot(str, Enum):
    """One of the two interchangeable production identities of a route."""

    A = "a"
    B = "b"

    def complement(self) -> "Slot":
        return Slot.B if self is Slot.A else Slot.A

    @classmethod
    def parse(cls, value: object) -> "Slot":
        if isinstance(value, Slot):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Not a slot value: {value!r}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Not a slot value: {value!r}") from None

    @property
    def label(self) -> str:
        return self.value


def new_release_id() -> str:
    return secrets.token_hex(6)


@dataclass(frozen=True)
class Release:
    """One attempt to put a build on the inactive slot of a route.

    ``target_slot`` stays ``None`` until the orchestrator has read the live
    route; use :meth:`with_target` to derive the resolved release.
    """

    route: str
    build_id: str
    artifact_ref: str
    target_slot: Slot | None = None
    release_id: str = field(default_factory=new_release_id)

    def with_target(self, slot: Slot) -> "Release":
        return replace(self, target_slot=slot)

    def with_artifact(self, artifact_ref: str) -> "Release":
        return replace(self, artifact_ref=artifact_ref)


HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class HealthVerdict:
    status: str  # healthy|unhealthy|unknown
    detail: str = ""
    latency_ms: float | None = None

    @classmethod
    def healthy(cls, detail: str = "Healthy", latency_ms: float | None = None) -> "HealthVerdict":
        return cls(HEALTHY, detail, latency_ms)

    @classmethod
    def unhealthy(cls, detail: str, latency_ms: float | None = None) -> "HealthVerdict":
        return cls(UNHEALTHY, detail, latency_ms)

    @classmethod
    def unknown(cls, reason: str, latency_ms: float | None = None) -> "HealthVerdict":
        return cls(UNKNOWN, reason, latency_ms)

    @property
    def is_healthy(self) -> bool:
        # Unknown never counts as healthy.
        return self.status == HEALTHY

    @property
    def is_unhealthy(self) -> bool:
        return self.status == UNHEALTHY
