from __future__ import annotations

TRANSIENT_INFRASTRUCTURE = "transient_infrastructure"
VALIDATION_OR_CONFIG = "validation_or_config"
HEALTH_FAILURE = "health_failure"
COMMIT_FAILURE = "commit_failure"


class DeploymentError(Exception):
    """Base class for every failure surfaced by a release."""

    category = TRANSIENT_INFRASTRUCTURE
    code = "deployment_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    @property
    def requires_operator(self) -> bool:
        return self.category == COMMIT_FAILURE

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "category": self.category,
            "detail": self.detail,
            "requires_operator": self.requires_operator,
        }


class ControlPlaneUnreachable(DeploymentError):
    code = "control_plane_unreachable"


class RouteNotFound(DeploymentError):
    category = VALIDATION_OR_CONFIG
    code = "route_not_found"


class InvalidRelease(DeploymentError):
    category = VALIDATION_OR_CONFIG
    code = "invalid_release"


class ArtifactNotFound(DeploymentError):
    category = VALIDATION_OR_CONFIG
    code = "artifact_not_found"


class ReleaseInProgress(DeploymentError):
    category = VALIDATION_OR_CONFIG
    code = "release_in_progress"


class DeployFailed(DeploymentError):
    code = "deploy_failed"


class HealthCheckTimeout(DeploymentError):
    category = HEALTH_FAILURE
    code = "health_check_timeout"


class HealthCheckFailed(DeploymentError):
    category = HEALTH_FAILURE
    code = "health_check_failed"


class ReleaseCancelled(DeploymentError):
    category = HEALTH_FAILURE
    code = "release_cancelled"


class CutoverFailed(DeploymentError):
    """The route write was rejected or could not be observed.

    Cluster state is ambiguous after this; it is never retried automatically.
    """

    category = COMMIT_FAILURE
    code = "cutover_failed"


class LeaseLost(DeploymentError):
    """The route's lease expired and another release took it over."""

    code = "lease_lost"
