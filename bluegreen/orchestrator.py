from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from . import db
from .alerts import send_email
from .controlplane import ControlPlane, validate_route_name
from .errors import (
    ControlPlaneUnreachable,
    CutoverFailed,
    DeployFailed,
    DeploymentError,
    HealthCheckFailed,
    HealthCheckTimeout,
    InvalidRelease,
    LeaseLost,
    ReleaseCancelled,
)
from .events import DbEventSink, EventSink, TransitionEvent
from .health import HttpHealthProbe
from .leases import RouteLeases
from .registry import ImageRegistry, validate_build_id
from .settings import Settings
from .slots import HealthVerdict, Release, Slot


class ReleaseState(str, Enum):
    IDLE = "idle"
    DETERMINING = "determining"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    CUTOVER = "cutover"
    CLEANUP = "cleanup"
    DONE = "done"
    ABORTING = "aborting"
    REVERTED = "reverted"
    FAILED = "failed"
    COMMIT_FAILED = "commit_failed"


TRANSITIONS: dict[ReleaseState, set[ReleaseState]] = {
    ReleaseState.IDLE: {ReleaseState.DETERMINING, ReleaseState.FAILED},
    ReleaseState.DETERMINING: {ReleaseState.DEPLOYING, ReleaseState.FAILED},
    ReleaseState.DEPLOYING: {ReleaseState.VERIFYING, ReleaseState.ABORTING},
    ReleaseState.VERIFYING: {ReleaseState.CUTOVER, ReleaseState.ABORTING},
    ReleaseState.CUTOVER: {ReleaseState.CLEANUP, ReleaseState.COMMIT_FAILED},
    ReleaseState.CLEANUP: {ReleaseState.DONE},
    ReleaseState.ABORTING: {ReleaseState.REVERTED},
}

TERMINAL_STATES = {ReleaseState.DONE, ReleaseState.REVERTED, ReleaseState.FAILED, ReleaseState.COMMIT_FAILED}


def _slot(s: Slot | None) -> str | None:
    return s.label if s is not None else None


def _log_sink_failure(ev: TransitionEvent, e: Exception) -> str | None:
    """Write a sink failure to the event log; returns why that failed, if it did."""
    try:
        db.log_event(
            "ERROR",
            f"Event sink rejected {ev.from_state} -> {ev.to_state}: {type(e).__name__}: {e}",
            route=ev.route,
            release_id=ev.release_id,
            build_id=ev.build_id,
        )
    except sqlite3.Error as log_error:
        return f"event log unavailable: {log_error}"
    return None


@dataclass
class ReleaseOutcome:
    release: Release
    state: ReleaseState
    active_slot: Slot | None = None
    previous_slot: Slot | None = None
    error: DeploymentError | None = None
    cleanup_error: str | None = None
    trace: list[TransitionEvent] = field(default_factory=list)
    event_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == ReleaseState.DONE

    @property
    def aborted(self) -> bool:
        return self.state == ReleaseState.REVERTED

    def to_dict(self) -> dict[str, object]:
        return {
            "release_id": self.release.release_id,
            "route": self.release.route,
            "build_id": self.release.build_id,
            "artifact_ref": self.release.artifact_ref,
            "target_slot": _slot(self.release.target_slot),
            "state": self.state.value,
            "active_slot": _slot(self.active_slot),
            "previous_slot": _slot(self.previous_slot),
            "error": self.error.to_dict() if self.error else None,
            "cleanup_error": self.cleanup_error,
            "trace": [e.to_dict() for e in self.trace],
            "event_errors": list(self.event_errors),
        }


class _ReleaseRun:
    """Mutable bookkeeping for one pass through the state machine."""

    def __init__(self, release: Release, events: EventSink):
        self.release = release
        self.events = events
        self.state = ReleaseState.IDLE
        self.previous: Slot | None = None
        self.active: Slot | None = None
        self.cleanup_error: str | None = None
        self.trace: list[TransitionEvent] = []
        self.sink_errors: list[str] = []

    @property
    def target(self) -> Slot:
        if self.release.target_slot is None:
            raise RuntimeError("Release has no target slot before determining")
        return self.release.target_slot

    @property
    def previous_slot(self) -> Slot:
        if self.previous is None:
            raise RuntimeError("Release has no previous slot before determining")
        return self.previous

    def _emit(self, to_state: ReleaseState, message: str, level: str, error: DeploymentError | None) -> None:
        ev = TransitionEvent(
            release_id=self.release.release_id,
            route=self.release.route,
            build_id=self.release.build_id,
            from_state=self.state.value,
            to_state=to_state.value,
            message=message,
            level=level,
            from_slot=_slot(self.previous),
            to_slot=_slot(self.release.target_slot),
            error_code=error.code if error else None,
        )
        self.trace.append(ev)
        try:
            self.events.emit(ev, self.release.artifact_ref, _slot(self.release.target_slot))
        except Exception as e:
            # Recording must not steer the release; the trace stays complete.
            self.sink_errors.append(f"{ev.to_state}: {type(e).__name__}: {e}")
            unlogged = _log_sink_failure(ev, e)
            if unlogged:
                self.sink_errors.append(unlogged)

    def move(
        self, to_state: ReleaseState, message: str, level: str = "INFO", error: DeploymentError | None = None
    ) -> None:
        if to_state not in TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal release transition {self.state.value} -> {to_state.value}")
        self._emit(to_state, message, level, error)
        self.state = to_state

    def note(self, message: str, level: str = "INFO") -> None:
        self._emit(self.state, message, level, None)

    def outcome(self, error: DeploymentError | None = None) -> ReleaseOutcome:
        return ReleaseOutcome(
            release=self.release,
            state=self.state,
            active_slot=self.active,
            previous_slot=self.previous,
            error=error,
            cleanup_error=self.cleanup_error,
            trace=list(self.trace),
            event_errors=list(self.sink_errors),
        )


class DeploymentOrchestrator:
    """Blue/green cutover for one route per release.

    The orchestrator keeps no slot bookkeeping of its own: the live route on
    the control plane is the only truth, re-read at the start of every
    release and after every route write.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        cfg: Settings,
        probe: HttpHealthProbe | None = None,
        registry: ImageRegistry | None = None,
        events: EventSink | None = None,
        leases: RouteLeases | None = None,
    ):
        self.cp = control_plane
        self.cfg = cfg
        self.probe = probe or HttpHealthProbe(timeout_s=cfg.probe_timeout_s)
        self.registry = registry or ImageRegistry(cfg.image_repository)
        self.events = events or DbEventSink()
        self.leases = leases or RouteLeases(cfg.lease_ttl_s)

    # --- public operations ---

    def determine(self, route: str) -> tuple[Slot, Slot]:
        """Return (active, target) where target is always the complement of the live route."""
        try:
            active = self.cp.get_active_slot(route)
        except DeploymentError:
            raise
        except Exception as e:
            raise ControlPlaneUnreachable(f"Cannot read route '{route}': {type(e).__name__}: {e}") from e
        return active, active.complement()

    def prepare(self, release: Release) -> Release:
        """Validate a release and resolve its artifact before anything touches the cluster."""
        try:
            validate_route_name(release.route)
        except ValueError as e:
            raise InvalidRelease(str(e)) from e
        validate_build_id(release.build_id)
        ref = release.artifact_ref or self.registry.resolve(release.build_id)
        self.registry.verify(ref)
        return release.with_artifact(ref)

    def run(
        self, release: Release, cancel: threading.Event | None = None, prepared: bool = False
    ) -> ReleaseOutcome:
        """Drive one release to a terminal state.

        ``prepared`` marks a release that already went through :meth:`prepare`,
        so the artifact is not resolved and verified a second time.
        """
        cancel = cancel or threading.Event()
        run = _ReleaseRun(release, self.events)
        try:
            run.release = release if prepared else self.prepare(release)
        except DeploymentError as e:
            run.move(ReleaseState.FAILED, f"Release rejected: {e.detail}", level="ERROR", error=e)
            return run.outcome(e)

        try:
            with self.leases.hold(release.route, release.release_id):
                return self._execute(run, cancel)
        except DeploymentError as e:
            if run.state != ReleaseState.IDLE:
                raise
            run.move(ReleaseState.FAILED, f"Release rejected: {e.detail}", level="ERROR", error=e)
            return run.outcome(e)

    # --- state machine ---

    def _execute(self, run: _ReleaseRun, cancel: threading.Event) -> ReleaseOutcome:
        route = run.release.route
        run.move(ReleaseState.DETERMINING, f"Reading active slot of route {route}")
        try:
            active, target = self.determine(route)
        except DeploymentError as e:
            run.move(ReleaseState.FAILED, f"Cannot determine active slot: {e.detail}", level="ERROR", error=e)
            return run.outcome(e)

        requested = run.release.target_slot
        if requested is not None and requested != target:
            e = InvalidRelease(f"Release asks for slot {requested.label} but slot {active.label} is live on {route}.")
            run.move(ReleaseState.FAILED, e.detail, level="ERROR", error=e)
            return run.outcome(e)

        run.previous = active
        run.active = active
        run.release = run.release.with_target(target)
        lost = self._lease_lost(run)
        if lost is not None:
            run.move(ReleaseState.FAILED, lost.detail, level="ERROR", error=lost)
            return run.outcome(lost)

        run.move(ReleaseState.DEPLOYING, f"Deploying {run.release.artifact_ref} to slot {target.label}")
        if cancel.is_set():
            return self._abort(run, ReleaseCancelled("Cancelled before deploy"))
        try:
            self.cp.apply_workload(route, target, run.release.artifact_ref)
        except DeploymentError as e:
            return self._abort(run, DeployFailed(e.detail))
        except Exception as e:
            return self._abort(run, DeployFailed(f"{type(e).__name__}: {e}"))

        lost = self._lease_lost(run)
        if lost is not None:
            return self._abort(run, lost)

        run.move(ReleaseState.VERIFYING, f"Waiting for slot {target.label} to become ready")
        failure = self._verify(run, cancel)
        if failure is None:
            # Last chance to notice a takeover: the route write cannot be undone.
            failure = self._lease_lost(run)
        if failure is not None:
            return self._abort(run, failure)

        return self._cutover(run)

    def _lease_lost(self, run: _ReleaseRun) -> LeaseLost | None:
        route, holder = run.release.route, run.release.release_id
        try:
            if self.leases.renew(route, holder):
                return None
        except sqlite3.Error as e:
            return LeaseLost(f"Cannot renew the lease on route {route}: {e}")
        return LeaseLost(f"Lease on route {route} passed to {db.lease_holder(route) or 'another release'}")

    def _verify(self, run: _ReleaseRun, cancel: threading.Event) -> DeploymentError | None:
        route, target = run.release.route, run.target
        rollout_timeout = self.cfg.rollout_timeout_s
        try:
            ready = self.cp.wait_for_rollout_ready(route, target, rollout_timeout, cancel)
        except Exception as e:
            return DeployFailed(f"Rollout status unavailable: {type(e).__name__}: {e}")
        if cancel.is_set():
            return ReleaseCancelled("Cancelled while waiting for rollout")
        if not ready:
            return HealthCheckTimeout(f"Slot {target.label} was not ready within {rollout_timeout:g}s")

        endpoint = self.cp.workload_endpoint(route, target)
        health_timeout = self.cfg.health_timeout_s
        threshold = max(1, int(self.cfg.health_failure_threshold))
        deadline = time.monotonic() + health_timeout
        failures = 0
        last: HealthVerdict | None = None
        while True:
            if cancel.is_set():
                return ReleaseCancelled("Cancelled during health verification")
            lost = self._lease_lost(run)
            if lost is not None:
                return lost
            try:
                verdict = self.probe.check(endpoint)
            except Exception as e:
                verdict = HealthVerdict.unknown(f"Probe error: {type(e).__name__}: {e}")
            if last is None or verdict.status != last.status:
                level = "INFO" if verdict.is_healthy else "WARN"
                run.note(f"Health of slot {target.label} at {endpoint}: {verdict.status} ({verdict.detail})", level)
            last = verdict

            if verdict.is_healthy:
                return None
            if verdict.is_unhealthy:
                failures += 1
                if failures >= threshold:
                    return HealthCheckFailed(f"{endpoint}: {verdict.detail}")
            else:
                failures = 0

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return HealthCheckTimeout(
                    f"No healthy verdict from {endpoint} within {health_timeout:g}s (last: {last.detail})"
                )
            if cancel.wait(min(self.cfg.health_interval_s, remaining)):
                return ReleaseCancelled("Cancelled during health verification")

    def _cutover(self, run: _ReleaseRun) -> ReleaseOutcome:
        route, target, previous = run.release.route, run.target, run.previous_slot
        build = run.release.build_id
        run.move(
            ReleaseState.CUTOVER,
            f"Switching route {route} from slot {previous.label} to slot {target.label} (build {build})",
            level="WARN",
        )
        try:
            self.cp.set_active_slot(route, target)
        except DeploymentError as e:
            return self._commit_failed(run, f"Route write rejected: {e.detail}")
        except Exception as e:
            return self._commit_failed(run, f"Route write rejected: {type(e).__name__}: {e}")

        try:
            observed = self.cp.get_active_slot(route)
        except Exception as e:
            return self._commit_failed(run, f"Route write not confirmed: {type(e).__name__}: {e}")
        if observed != target:
            return self._commit_failed(run, f"Route write not observed (route reads slot {observed.label})")

        run.active = target
        run.move(
            ReleaseState.CLEANUP,
            f"Route {route} moved from slot {previous.label} to slot {target.label} (build {build}); "
            f"removing slot {previous.label}",
            level="WARN",
        )
        try:
            self.cp.delete_workload(route, previous)
        except Exception as e:
            # The cutover stands; the old slot is left for an operator.
            run.cleanup_error = f"{type(e).__name__}: {e}"
            run.note(f"Could not remove slot {previous.label}: {run.cleanup_error}", level="WARN")

        run.move(ReleaseState.DONE, f"Build {build} is live on slot {target.label} of route {route}")
        return run.outcome()

    def _commit_failed(self, run: _ReleaseRun, detail: str) -> ReleaseOutcome:
        route, target, previous = run.release.route, run.target, run.previous_slot
        try:
            observed: Slot | None = self.cp.get_active_slot(route)
        except Exception:
            observed = None
        run.active = observed
        seen = observed.label if observed else "unknown"
        err = CutoverFailed(
            f"{detail}. Route {route} reads slot {seen} (was {previous.label}, wanted {target.label}), "
            f"build {run.release.build_id}. Operator action required; nothing was deleted."
        )
        run.move(ReleaseState.COMMIT_FAILED, err.detail, level="CRITICAL", error=err)
        send_email(f"CUTOVER FAILED: {route} build {run.release.build_id}", err.detail, self.cfg)
        return run.outcome(err)

    def _abort(self, run: _ReleaseRun, err: DeploymentError) -> ReleaseOutcome:
        route, target, previous = run.release.route, run.target, run.previous_slot
        run.move(ReleaseState.ABORTING, f"Aborting release: {err.detail}", level="ERROR", error=err)
        if isinstance(err, LeaseLost):
            # The slot now belongs to whichever release holds the lease.
            run.note(f"Leaving slot {target.label} to the current lease holder", level="WARN")
        elif self.cfg.keep_failed_candidate:
            run.note(f"Leaving failed candidate on slot {target.label} for inspection", level="WARN")
        else:
            try:
                self.cp.delete_workload(route, target)
            except Exception as e:
                run.cleanup_error = f"{type(e).__name__}: {e}"
                run.note(f"Could not remove candidate slot {target.label}: {run.cleanup_error}", level="WARN")
        if isinstance(err, LeaseLost):
            summary = f"Build {run.release.build_id} abandoned; route {route} is managed by another release"
        else:
            summary = f"Route {route} left on slot {previous.label}; build {run.release.build_id} not released"
        run.move(
            ReleaseState.REVERTED,
            summary,
            level="ERROR",
            error=err,
        )
        send_email(f"Release aborted: {route} build {run.release.build_id}", err.detail, self.cfg)
        return run.outcome(err)


def build_orchestrator(
    cfg: Settings, listener: Callable[[TransitionEvent], None] | None = None
) -> DeploymentOrchestrator:
    """Wire the configured backend, registry, probe and event log together."""
    from .controlplane import build_control_plane
    from .registry import build_registry

    return DeploymentOrchestrator(
        control_plane=build_control_plane(cfg),
        cfg=cfg,
        probe=HttpHealthProbe(timeout_s=cfg.probe_timeout_s),
        registry=build_registry(cfg),
        events=DbEventSink(listener=listener),
        leases=RouteLeases(cfg.lease_ttl_s),
    )
