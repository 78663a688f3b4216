from __future__ import annotations

import re
from typing import Any, Callable

import docker
from docker.errors import APIError, DockerException, NotFound

from .errors import ArtifactNotFound, InvalidRelease
from .settings import Settings

# repository[:tag][@sha256:digest]; repository may carry a registry host with port.
ARTIFACT_REF_RE = re.compile(
    r"^(?P<repo>[a-z0-9]+(?:[._\-/:][a-z0-9]+)*?)"
    r"(?::(?P<tag>[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}))?"
    r"(?:@(?P<digest>sha256:[a-f0-9]{64}))?$"
)
BUILD_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")


def validate_build_id(build_id: str) -> None:
    if not BUILD_ID_RE.match(build_id or ""):
        raise InvalidRelease(f"Invalid build id {build_id!r}. Use letters/numbers and -._ (max 128 chars).")


def validate_artifact_ref(ref: str) -> None:
    if not ref or len(ref) > 512 or any(ch.isspace() for ch in ref):
        raise InvalidRelease(f"Invalid artifact reference {ref!r}.")
    if "<" in ref or ">" in ref:
        raise InvalidRelease(f"Artifact reference {ref!r} still contains a placeholder.")
    if not ARTIFACT_REF_RE.match(ref):
        raise InvalidRelease(f"Invalid artifact reference {ref!r}. Expected repository[:tag][@sha256:digest].")


class ImageRegistry:
    """Maps build identifiers onto image references of one repository."""

    def __init__(self, repository: str | None):
        self.repository = (repository or "").rstrip("/") or None

    def resolve(self, build_id: str) -> str:
        validate_build_id(build_id)
        if not self.repository:
            raise InvalidRelease("No artifact reference given and BG_IMAGE_REPOSITORY is not configured.")
        ref = f"{self.repository}:{build_id}"
        validate_artifact_ref(ref)
        return ref

    def verify(self, artifact_ref: str) -> None:
        validate_artifact_ref(artifact_ref)


class DockerImageRegistry(ImageRegistry):
    """Also checks that the reference exists in its registry (read-only)."""

    def __init__(self, repository: str | None, client_factory: Callable[[], Any] | None = None):
        super().__init__(repository)
        self._client_factory = client_factory or docker.from_env

    def verify(self, artifact_ref: str) -> None:
        super().verify(artifact_ref)
        try:
            self._client_factory().images.get_registry_data(artifact_ref)
        except NotFound as e:
            raise ArtifactNotFound(f"Image {artifact_ref} not found in its registry.") from e
        except (APIError, DockerException) as e:
            raise ArtifactNotFound(f"Cannot verify image {artifact_ref}: {e}") from e


def build_registry(cfg: Settings) -> ImageRegistry:
    if cfg.verify_artifacts:
        return DockerImageRegistry(cfg.image_repository)
    return ImageRegistry(cfg.image_repository)
