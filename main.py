from __future__ import annotations

import secrets
from dataclasses import asdict
from threading import Thread

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from bluegreen import db
from bluegreen.api_models import ReleaseRequest, RouteInitRequest
from bluegreen.errors import ControlPlaneUnreachable, DeploymentError, RouteNotFound, VALIDATION_OR_CONFIG
from bluegreen.events import TransitionEvent
from bluegreen.orchestrator import DeploymentOrchestrator, ReleaseOutcome, build_orchestrator
from bluegreen.runtime import ReleaseStatus, RuntimeState
from bluegreen.settings import settings
from bluegreen.slots import Release, Slot

app = FastAPI(title="Blue-Green Release Orchestrator")
security = HTTPBasic()
runtime = RuntimeState()

_orchestrator: DeploymentOrchestrator | None = None


def _on_event(ev: TransitionEvent) -> None:
    changes: dict[str, object] = {"state": ev.to_state, "message": ev.message}
    if ev.to_slot:
        changes["target_slot"] = ev.to_slot
    runtime.update(ev.release_id, **changes)


def get_orchestrator() -> DeploymentOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(settings, listener=_on_event)
    return _orchestrator


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    ok_user = secrets.compare_digest(credentials.username, settings.admin_user)
    ok_pass = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (ok_user and ok_pass):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


@app.on_event("startup")
def startup() -> None:
    db.init_db(settings.db_path)


def _record(outcome: ReleaseOutcome) -> ReleaseStatus:
    st = runtime.get_release(outcome.release.release_id) or ReleaseStatus(
        id=outcome.release.release_id,
        route=outcome.release.route,
        build_id=outcome.release.build_id,
        artifact_ref=outcome.release.artifact_ref,
        state=outcome.state.value,
        message="",
    )
    st.artifact_ref = outcome.release.artifact_ref
    st.state = outcome.state.value
    st.message = outcome.trace[-1].message if outcome.trace else ""
    st.target_slot = outcome.release.target_slot.label if outcome.release.target_slot else None
    st.active_slot = outcome.active_slot.label if outcome.active_slot else None
    st.error = outcome.error.to_dict() if outcome.error else None
    runtime.upsert_release(st)
    return st


def _run_release(orch: DeploymentOrchestrator, release: Release) -> None:
    cancel = runtime.cancel_event(release.release_id)
    try:
        outcome = orch.run(release, cancel, prepared=True)
    except Exception as e:
        db.log_event(
            "ERROR",
            f"Release crashed: {type(e).__name__}: {e}",
            route=release.route,
            release_id=release.release_id,
            build_id=release.build_id,
        )
        runtime.update(release.release_id, state="failed", message=f"Release crashed: {type(e).__name__}: {e}")
        return
    finally:
        runtime.forget_cancel(release.release_id)
    _record(outcome)


def _http_error(e: DeploymentError) -> HTTPException:
    if isinstance(e, RouteNotFound):
        code = 404
    elif isinstance(e, ControlPlaneUnreachable):
        code = 503
    elif e.code == "release_in_progress":
        code = 409
    elif e.category == VALIDATION_OR_CONFIG:
        code = 422
    else:
        code = 502
    return HTTPException(status_code=code, detail=e.to_dict())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.post("/routes")
def init_route(
    req: RouteInitRequest,
    username: str = Depends(get_current_username),
    orch: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        slot = Slot.parse(req.initial_slot)
        active = orch.cp.ensure_route(req.route, slot)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except DeploymentError as e:
        raise _http_error(e)
    db.log_event("INFO", f"Route {req.route} initialised by {username} on slot {active.label}", route=req.route)
    return {"route": req.route, "active_slot": active.label}


@app.get("/routes/{route}")
def get_route(
    route: str,
    username: str = Depends(get_current_username),
    orch: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        active, idle = orch.determine(route)
    except DeploymentError as e:
        raise _http_error(e)
    return {
        "route": route,
        "active_slot": active.label,
        "idle_slot": idle.label,
        "endpoints": {s.label: orch.cp.workload_endpoint(route, s) for s in Slot},
        "lease_holder": db.lease_holder(route),
    }


@app.post("/releases")
def start_release(
    req: ReleaseRequest,
    username: str = Depends(get_current_username),
    orch: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        target = Slot.parse(req.target_slot) if req.target_slot else None
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    release = Release(route=req.route, build_id=req.build_id, artifact_ref=req.artifact_ref or "", target_slot=target)

    if req.wait:
        try:
            outcome = orch.run(release, runtime.cancel_event(release.release_id))
        finally:
            runtime.forget_cancel(release.release_id)
        _record(outcome)
        if outcome.error is not None and outcome.state.value == "failed":
            raise _http_error(outcome.error)
        return outcome.to_dict()

    # Fail fast on bad input and busy routes; the lease taken by run() stays the real guard.
    try:
        release = orch.prepare(release)
    except DeploymentError as e:
        raise _http_error(e)
    holder = db.lease_holder(release.route)
    if holder:
        raise HTTPException(
            status_code=409,
            detail={"code": "release_in_progress", "detail": f"Route '{release.route}' is busy (lease held by {holder})."},
        )

    st = ReleaseStatus(
        id=release.release_id,
        route=release.route,
        build_id=release.build_id,
        artifact_ref=release.artifact_ref,
        state="idle",
        message=f"Release requested by {username}",
    )
    runtime.upsert_release(st)
    runtime.cancel_event(release.release_id)
    Thread(target=_run_release, args=(orch, release), daemon=True).start()
    return JSONResponse(status_code=202, content=asdict(st))


@app.get("/releases")
def list_releases(route: str | None = None, username: str = Depends(get_current_username)):
    live = [asdict(st) for st in runtime.list_releases() if route is None or st.route == route]
    seen = {r["id"] for r in live}
    history = [asdict(r) for r in db.list_releases(route=route) if r.id not in seen]
    return {"releases": live, "history": history}


@app.get("/releases/{release_id}")
def get_release(release_id: str, username: str = Depends(get_current_username)):
    st = runtime.get_release(release_id)
    if st is not None:
        return asdict(st)
    row = db.get_release(release_id)
    if row is None:
        raise HTTPException(status_code=404, detail="unknown release")
    return asdict(row)


@app.post("/releases/{release_id}/cancel")
def cancel_release(release_id: str, username: str = Depends(get_current_username)):
    if not runtime.cancel(release_id):
        raise HTTPException(status_code=404, detail="release is not running in this process")
    db.log_event("WARN", f"Cancellation requested by {username}", release_id=release_id)
    return {"release_id": release_id, "cancel_requested": True}


@app.get("/events")
def events(limit: int = 100, release_id: str | None = None, username: str = Depends(get_current_username)):
    return db.latest_events(limit=max(1, min(1000, int(limit))), release_id=release_id)
