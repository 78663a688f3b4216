from __future__ import annotations

import sqlite3
import threading
from typing import Any, Callable

import docker
from docker.errors import DockerException, NotFound

from . import db
from .controlplane import ControlPlane, WorkloadRef, validate_route_name, wait_until, with_retries
from .errors import ControlPlaneUnreachable, RouteNotFound
from .settings import Settings
from .slots import Slot

LABEL_ROUTE = "bg.route"
LABEL_SLOT = "bg.slot"
LABEL_ARTIFACT = "bg.artifact"


def container_name(route: str, slot: Slot, index: int) -> str:
    return f"bg-{route}-{slot.label}-{index}"


def container_http_base(name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{name}:{int(internal_port)}"


class DockerControlPlane(ControlPlane):
    """Single-node control plane: slots are labelled containers, routes live in SQLite.

    Containers are labelled so they can be re-discovered after restarts, and
    their names are derived from (route, slot, replica) so re-applying the
    same artifact converges instead of duplicating.
    """

    def __init__(self, cfg: Settings, client_factory: Callable[[], Any] | None = None):
        self.cfg = cfg
        self._client_factory = client_factory or docker.from_env
        self._retry_on: tuple[type[BaseException], ...] = (sqlite3.OperationalError, DockerException)

    def _client(self) -> Any:
        return self._client_factory()

    def _retry(self, fn: Callable[[], Any]) -> Any:
        return with_retries(fn, self.cfg.control_plane_retries, self.cfg.control_plane_backoff_s, self._retry_on)

    def docker_available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.cfg.docker_network)
        except NotFound:
            c.networks.create(self.cfg.docker_network, driver="bridge")
            db.log_event("INFO", f"Created docker network '{self.cfg.docker_network}'.")

    # --- routes ---

    def get_active_slot(self, route: str) -> Slot:
        try:
            row = self._retry(lambda: db.get_route(route))
        except sqlite3.Error as e:
            raise ControlPlaneUnreachable(f"Cannot read route '{route}': {e}") from e
        if row is None:
            raise RouteNotFound(f"Route '{route}' is not registered.")
        try:
            return Slot.parse(row.active_slot)
        except ValueError as e:
            raise ControlPlaneUnreachable(f"Route '{route}' has a malformed selector: {e}") from e

    def ensure_route(self, route: str, slot: Slot) -> Slot:
        validate_route_name(route)
        row = db.insert_route_if_absent(route, slot.label)
        return Slot.parse(row.active_slot)

    def set_active_slot(self, route: str, slot: Slot) -> None:
        if not db.set_route_slot(route, slot.label):
            raise RouteNotFound(f"Route '{route}' is not registered.")

    # --- workloads ---

    def _list(self, route: str, slot: Slot) -> list[Any]:
        filters = {"label": [f"{LABEL_ROUTE}={route}", f"{LABEL_SLOT}={slot.label}"]}
        return self._retry(lambda: self._client().containers.list(all=True, filters=filters))

    def apply_workload(self, route: str, slot: Slot, artifact_ref: str) -> WorkloadRef:
        validate_route_name(route)
        self._retry(self.ensure_network)

        wanted = [container_name(route, slot, i) for i in range(max(1, int(self.cfg.replicas)))]
        keep: set[str] = set()
        for cont in self._list(route, slot):
            labels = cont.labels or {}
            same = cont.name in wanted and labels.get(LABEL_ARTIFACT) == artifact_ref and cont.status == "running"
            if same:
                keep.add(cont.name)
                continue
            self._remove(cont)
            db.log_event("INFO", f"Removed stale container {cont.name}", route=route, to_slot=slot.label)

        c = self._client()
        for name in wanted:
            if name in keep:
                continue
            c.containers.run(
                artifact_ref,
                detach=True,
                name=name,
                environment={"BG_ROUTE": route, "BG_SLOT": slot.label},
                network=self.cfg.docker_network,
                labels={LABEL_ROUTE: route, LABEL_SLOT: slot.label, LABEL_ARTIFACT: artifact_ref},
                # Restarts are the orchestrator's decision; keep Docker's policy off.
                restart_policy={"Name": "no"},
            )
            db.log_event("INFO", f"Started container {name} from image {artifact_ref}", route=route, to_slot=slot.label)

        return WorkloadRef(route=route, slot=slot, artifact_ref=artifact_ref, names=tuple(wanted))

    def _remove(self, cont: Any) -> None:
        try:
            cont.remove(force=True)
        except NotFound:
            return

    def delete_workload(self, route: str, slot: Slot) -> None:
        for cont in self._list(route, slot):
            self._remove(cont)
            db.log_event("INFO", f"Removed container {cont.name}", route=route, from_slot=slot.label)

    def _replica_ready(self, cont: Any) -> bool:
        cont.reload()
        if cont.status != "running":
            return False
        health = (cont.attrs.get("State") or {}).get("Health")
        # Images without a HEALTHCHECK report no Health block.
        return health is None or health.get("Status") == "healthy"

    def _ready(self, route: str, slot: Slot) -> bool:
        containers = self._list(route, slot)
        if len(containers) < max(1, int(self.cfg.replicas)):
            return False
        try:
            return all(self._replica_ready(cont) for cont in containers)
        except NotFound:
            return False

    def wait_for_rollout_ready(
        self, route: str, slot: Slot, timeout_s: float, cancel: threading.Event | None = None
    ) -> bool:
        return wait_until(lambda: self._ready(route, slot), timeout_s, interval_s=1.0, cancel=cancel)

    def workload_endpoint(self, route: str, slot: Slot) -> str:
        base = container_http_base(container_name(route, slot, 0), self.cfg.container_port)
        return f"{base}{self.cfg.health_path}"
