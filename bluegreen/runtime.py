from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Event, Lock


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ReleaseStatus:
    id: str
    route: str
    build_id: str
    artifact_ref: str
    state: str
    message: str
    target_slot: str | None = None
    active_slot: str | None = None
    error: dict[str, object] | None = None
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory view of releases started by this process, plus their cancel switches."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.releases: dict[str, ReleaseStatus] = {}
        self.cancel_events: dict[str, Event] = {}

    def upsert_release(self, st: ReleaseStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.releases[st.id] = st

    def update(self, release_id: str, **changes: object) -> ReleaseStatus | None:
        """Apply field changes under the lock; returns a snapshot, or None for an unknown release."""
        with self.lock:
            st = self.releases.get(release_id)
            if st is None:
                return None
            for name, value in changes.items():
                setattr(st, name, value)
            st.updated_at = utc_now()
            return replace(st)

    def get_release(self, release_id: str) -> ReleaseStatus | None:
        with self.lock:
            st = self.releases.get(release_id)
            return replace(st) if st is not None else None

    def list_releases(self) -> list[ReleaseStatus]:
        with self.lock:
            return [replace(st) for st in self.releases.values()]

    def cancel_event(self, release_id: str) -> Event:
        with self.lock:
            return self.cancel_events.setdefault(release_id, Event())

    def cancel(self, release_id: str) -> bool:
        """Signal cancellation. Returns False if the release is unknown to this process."""
        with self.lock:
            ev = self.cancel_events.get(release_id)
        if ev is None:
            return False
        ev.set()
        return True

    def forget_cancel(self, release_id: str) -> None:
        with self.lock:
            self.cancel_events.pop(release_id, None)
