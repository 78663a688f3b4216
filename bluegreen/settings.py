from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("BG_DB_PATH", "bluegreen.db")
    backend: str = os.getenv("BG_BACKEND", "docker")  # docker|kubernetes

    # Workloads
    replicas: int = _env_int("BG_REPLICAS", 1)
    container_port: int = _env_int("BG_CONTAINER_PORT", 8000)
    health_path: str = os.getenv("BG_HEALTH_PATH", "/health")

    # Docker backend
    docker_network: str = os.getenv("BG_DOCKER_NETWORK", "bluegreen")

    # Kubernetes backend
    k8s_namespace: str = os.getenv("BG_K8S_NAMESPACE", "default")
    k8s_selector_key: str = os.getenv("BG_K8S_SELECTOR_KEY", "slot")
    kubeconfig: str | None = os.getenv("BG_KUBECONFIG")

    # Verification
    rollout_timeout_s: float = _env_float("BG_ROLLOUT_TIMEOUT_S", 120.0)
    health_timeout_s: float = _env_float("BG_HEALTH_TIMEOUT_S", 60.0)
    health_interval_s: float = _env_float("BG_HEALTH_INTERVAL_S", 2.0)
    health_failure_threshold: int = _env_int("BG_HEALTH_FAILURE_THRESHOLD", 1)
    probe_timeout_s: float = _env_float("BG_PROBE_TIMEOUT_S", 2.0)

    # Control plane calls (apply/delete/read). Route writes are never retried.
    control_plane_retries: int = _env_int("BG_CONTROL_PLANE_RETRIES", 3)
    control_plane_backoff_s: float = _env_float("BG_CONTROL_PLANE_BACKOFF_S", 0.5)

    # Release behaviour
    lease_ttl_s: int = _env_int("BG_LEASE_TTL_S", 900)
    keep_failed_candidate: bool = _env_bool("BG_KEEP_FAILED_CANDIDATE", False)

    # Image registry
    image_repository: str | None = os.getenv("BG_IMAGE_REPOSITORY")
    verify_artifacts: bool = _env_bool("BG_VERIFY_ARTIFACTS", False)

    # API
    admin_user: str = os.getenv("BG_ADMIN_USER", "admin")
    admin_password: str = os.getenv("BG_ADMIN_PASSWORD", "change-me")

    # Email alerting (optional)
    enable_email: bool = _env_bool("BG_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("BG_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("BG_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("BG_SMTP_USER")
    smtp_password: str | None = os.getenv("BG_SMTP_PASSWORD")
    email_from: str | None = os.getenv("BG_EMAIL_FROM")
    email_to: str | None = os.getenv("BG_EMAIL_TO")


settings = Settings()
