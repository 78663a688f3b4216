import pytest
from docker.errors import NotFound

from bluegreen.errors import ArtifactNotFound, InvalidRelease
from bluegreen.registry import DockerImageRegistry, ImageRegistry, build_registry, validate_artifact_ref
from bluegreen.settings import Settings

DIGEST = "sha256:" + "a" * 64


@pytest.mark.parametrize(
    "ref",
    [
        "nginx",
        "nginx:1.27",
        "registry.example.com:5000/team/app:v1.2.3-RC1",
        "123456789012.dkr.ecr.eu-west-1.amazonaws.com/stripe-service:build-88",
        f"ghcr.io/acme/api@{DIGEST}",
        f"ghcr.io/acme/api:1.0@{DIGEST}",
    ],
)
def test_valid_artifact_refs(ref):
    validate_artifact_ref(ref)


@pytest.mark.parametrize(
    "ref",
    [
        "",
        "app:",
        "App:1",
        "app:1 2",
        "<argoprep-ecr-repo>/mail-service:latest",
        "app@sha256:short",
    ],
)
def test_invalid_artifact_refs(ref):
    with pytest.raises(InvalidRelease):
        validate_artifact_ref(ref)


def test_resolve_build_id_against_repository():
    reg = ImageRegistry("registry.example.com/shop/payments/")
    assert reg.resolve("build-42") == "registry.example.com/shop/payments:build-42"


def test_resolve_without_repository_is_a_config_error():
    with pytest.raises(InvalidRelease):
        ImageRegistry(None).resolve("build-42")


def test_resolve_rejects_bad_build_ids():
    with pytest.raises(InvalidRelease):
        ImageRegistry("shop/payments").resolve("../etc")


class _Images:
    def __init__(self, missing=False):
        self.missing = missing
        self.queried = []

    def get_registry_data(self, ref):
        self.queried.append(ref)
        if self.missing:
            raise NotFound("manifest unknown")
        return object()


class _Client:
    def __init__(self, images):
        self.images = images


def test_docker_registry_verifies_existence():
    images = _Images()
    reg = DockerImageRegistry("shop/payments", client_factory=lambda: _Client(images))
    reg.verify("shop/payments:42")
    assert images.queried == ["shop/payments:42"]


def test_docker_registry_missing_image():
    reg = DockerImageRegistry("shop/payments", client_factory=lambda: _Client(_Images(missing=True)))
    with pytest.raises(ArtifactNotFound):
        reg.verify("shop/payments:42")


def test_build_registry_picks_verifying_registry():
    assert type(build_registry(Settings(verify_artifacts=False))) is ImageRegistry
    assert isinstance(build_registry(Settings(verify_artifacts=True)), DockerImageRegistry)
