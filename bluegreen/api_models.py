from __future__ import annotations

from pydantic import BaseModel, Field


class RouteInitRequest(BaseModel):
    route: str = Field(..., description="Route name (dns-safe); the production entry point")
    initial_slot: str = Field("a", description="Slot the route selects when first created (a|b)")


class ReleaseRequest(BaseModel):
    route: str = Field(..., description="Route to release onto")
    build_id: str = Field(..., description="Build identifier produced by the pipeline")
    artifact_ref: str | None = Field(None, description="Image reference; resolved from build_id when omitted")
    target_slot: str | None = Field(None, description="Optional guard: refuse unless this is the idle slot")
    wait: bool = Field(False, description="Run inline and return the final outcome")
