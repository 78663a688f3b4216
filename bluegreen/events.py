from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Callable, Protocol

from . import db
from .runtime import utc_now


@dataclass(frozen=True)
class TransitionEvent:
    release_id: str
    route: str
    build_id: str
    from_state: str
    to_state: str
    message: str
    level: str = "INFO"
    from_slot: str | None = None
    to_slot: str | None = None
    error_code: str | None = None
    ts: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class EventSink(Protocol):
    def emit(self, event: TransitionEvent, artifact_ref: str, target_slot: str | None) -> None: ...


class DbEventSink:
    """Appends every event to the event log and keeps the release history row current."""

    def __init__(self, listener: Callable[[TransitionEvent], None] | None = None):
        self.listener = listener

    def emit(self, event: TransitionEvent, artifact_ref: str, target_slot: str | None) -> None:
        db.log_event(
            event.level,
            event.message,
            route=event.route,
            release_id=event.release_id,
            build_id=event.build_id,
            from_state=event.from_state,
            to_state=event.to_state,
            from_slot=event.from_slot,
            to_slot=event.to_slot,
        )
        db.upsert_release(
            release_id=event.release_id,
            route=event.route,
            build_id=event.build_id,
            artifact_ref=artifact_ref,
            target_slot=target_slot,
            state=event.to_state,
            message=event.message,
            error_code=event.error_code,
        )
        if self.listener is not None:
            self.listener(event)
