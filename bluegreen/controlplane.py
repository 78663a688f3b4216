from __future__ import annotations

import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import Retrying, retry_if_exception, retry_if_exception_type, stop_after_attempt, wait_exponential

from .settings import Settings
from .slots import Slot

T = TypeVar("T")

ROUTE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,50}$")


def validate_route_name(route: str) -> None:
    # Workload names are derived from the route, so it must stay DNS-label safe.
    if not ROUTE_NAME_RE.match(route or ""):
        raise ValueError(
            "Invalid route name. Use lowercase letters/numbers and hyphen, starting with a letter (max 51 chars)."
        )


@dataclass(frozen=True)
class WorkloadRef:
    route: str
    slot: Slot
    artifact_ref: str
    names: tuple[str, ...]


class ControlPlane(ABC):
    """Query/mutate routing and workload objects of a cluster."""

    @abstractmethod
    def get_active_slot(self, route: str) -> Slot:
        """Return the slot the route currently selects.

        Raises RouteNotFound when the route does not exist and
        ControlPlaneUnreachable when it cannot be read or parsed.
        """

    @abstractmethod
    def ensure_route(self, route: str, slot: Slot) -> Slot:
        """Create the route pointing at ``slot`` unless it exists; return the active slot."""

    @abstractmethod
    def apply_workload(self, route: str, slot: Slot, artifact_ref: str) -> WorkloadRef:
        """Create or converge the slot's workload onto ``artifact_ref``."""

    @abstractmethod
    def set_active_slot(self, route: str, slot: Slot) -> None:
        """Repoint the route in one atomic write. Never retried."""

    @abstractmethod
    def delete_workload(self, route: str, slot: Slot) -> None:
        """Remove the slot's workload; a missing workload is not an error."""

    @abstractmethod
    def wait_for_rollout_ready(
        self, route: str, slot: Slot, timeout_s: float, cancel: threading.Event | None = None
    ) -> bool:
        """Block until every replica of the slot is ready. False on timeout or cancel."""

    @abstractmethod
    def workload_endpoint(self, route: str, slot: Slot) -> str:
        """Health URL of the slot's workload, reachable from the orchestrator."""


def with_retries(
    fn: Callable[[], T],
    retries: int,
    backoff_s: float,
    retry_on: tuple[type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    should_retry: Callable[[BaseException], bool] | None = None,
) -> T:
    """Call ``fn`` and retry transient failures; delay doubles after each attempt.

    ``retries`` counts attempts, so 1 means a single call. The last error is
    re-raised as-is once attempts run out.
    """
    retry = retry_if_exception_type(retry_on)
    if should_retry is not None:
        retry = retry & retry_if_exception(should_retry)
    retrying = Retrying(
        stop=stop_after_attempt(max(1, int(retries))),
        wait=wait_exponential(multiplier=backoff_s),
        retry=retry,
        sleep=sleep,
        reraise=True,
    )
    return retrying(fn)


def wait_until(
    predicate: Callable[[], bool],
    timeout_s: float,
    interval_s: float,
    cancel: threading.Event | None = None,
) -> bool:
    """Poll ``predicate`` until it holds, the timeout passes or ``cancel`` is set."""
    cancel = cancel or threading.Event()
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        if cancel.is_set():
            return False
        if predicate():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        if cancel.wait(min(interval_s, remaining)):
            return False


def build_control_plane(cfg: Settings) -> ControlPlane:
    backend = (cfg.backend or "docker").strip().lower()
    if backend == "docker":
        from .docker_ops import DockerControlPlane

        return DockerControlPlane(cfg)
    if backend in {"kubernetes", "k8s"}:
        from .k8s_ops import KubernetesControlPlane

        return KubernetesControlPlane(cfg)
    raise ValueError(f"Unknown control plane backend '{cfg.backend}' (expected docker|kubernetes).")
