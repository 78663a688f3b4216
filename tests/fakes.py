"""In-process stand-ins for the control plane, the health probe and the event sink."""
from __future__ import annotations

import threading

from bluegreen.controlplane import ControlPlane, WorkloadRef
from bluegreen.errors import RouteNotFound
from bluegreen.slots import HealthVerdict, Slot


class FakeControlPlane(ControlPlane):
    def __init__(self, routes: dict[str, Slot] | None = None, ready: bool = True):
        self.routes: dict[str, Slot] = dict(routes or {})
        self.workloads: dict[tuple[str, Slot], str] = {}
        self.calls: list[tuple] = []
        self.ready = ready
        self.fail_get: Exception | None = None
        self.fail_apply: Exception | None = None
        self.fail_set: Exception | None = None
        self.fail_delete: Exception | None = None
        self.fail_ready: Exception | None = None
        # Accept the route write but leave the route unchanged.
        self.drop_set = False
        self.on_ready = None

    def get_active_slot(self, route: str) -> Slot:
        self.calls.append(("get_active_slot", route))
        if self.fail_get is not None:
            raise self.fail_get
        if route not in self.routes:
            raise RouteNotFound(f"Route '{route}' is not registered.")
        return self.routes[route]

    def ensure_route(self, route: str, slot: Slot) -> Slot:
        self.calls.append(("ensure_route", route, slot))
        return self.routes.setdefault(route, slot)

    def apply_workload(self, route: str, slot: Slot, artifact_ref: str) -> WorkloadRef:
        self.calls.append(("apply_workload", route, slot, artifact_ref))
        if self.fail_apply is not None:
            raise self.fail_apply
        self.workloads[(route, slot)] = artifact_ref
        return WorkloadRef(route=route, slot=slot, artifact_ref=artifact_ref, names=(f"{route}-{slot.label}",))

    def set_active_slot(self, route: str, slot: Slot) -> None:
        self.calls.append(("set_active_slot", route, slot))
        if self.fail_set is not None:
            raise self.fail_set
        if not self.drop_set:
            self.routes[route] = slot

    def delete_workload(self, route: str, slot: Slot) -> None:
        self.calls.append(("delete_workload", route, slot))
        if self.fail_delete is not None:
            raise self.fail_delete
        self.workloads.pop((route, slot), None)

    def wait_for_rollout_ready(self, route, slot, timeout_s, cancel=None) -> bool:
        self.calls.append(("wait_for_rollout_ready", route, slot))
        if self.on_ready is not None:
            self.on_ready()
        if self.fail_ready is not None:
            raise self.fail_ready
        return self.ready

    def workload_endpoint(self, route: str, slot: Slot) -> str:
        return f"http://{route}-{slot.label}.test/health"

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]


class ScriptedProbe:
    """Returns the scripted verdicts in order, repeating the last one forever."""

    def __init__(self, *verdicts: HealthVerdict, on_check=None):
        self.verdicts = list(verdicts) or [HealthVerdict.healthy()]
        self.endpoints: list[str] = []
        self.on_check = on_check

    def check(self, endpoint: str) -> HealthVerdict:
        self.endpoints.append(endpoint)
        if self.on_check is not None:
            self.on_check(len(self.endpoints))
        if len(self.verdicts) > 1:
            return self.verdicts.pop(0)
        return self.verdicts[0]


class RecordingEvents:
    def __init__(self):
        self.events = []
        self.lock = threading.Lock()

    def emit(self, event, artifact_ref, target_slot) -> None:
        with self.lock:
            self.events.append(event)

    def transitions(self) -> list[tuple[str, str]]:
        return [(e.from_state, e.to_state) for e in self.events if e.from_state != e.to_state]

    def states(self) -> list[str]:
        return [e.to_state for e in self.events if e.from_state != e.to_state]
