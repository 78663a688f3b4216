from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from . import db
from .errors import ReleaseInProgress


class RouteLeases:
    """At most one in-flight release per route, across processes sharing the state DB.

    A holder that dies keeps the route blocked only until ``ttl_s`` passes.
    """

    def __init__(self, ttl_s: float):
        self.ttl_s = ttl_s

    @contextmanager
    def hold(self, route: str, holder: str) -> Iterator[None]:
        if not db.acquire_lease(route, holder, self.ttl_s):
            raise ReleaseInProgress(
                f"Route '{route}' already has a release in flight (lease held by {db.lease_holder(route)})."
            )
        try:
            yield
        finally:
            db.release_lease(route, holder)

    def renew(self, route: str, holder: str) -> bool:
        """Push the expiry out again; False once the lease has passed to someone else."""
        return db.renew_lease(route, holder, self.ttl_s)
