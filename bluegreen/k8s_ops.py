from __future__ import annotations

import threading
from typing import Any, Callable

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from . import db
from .controlplane import ControlPlane, WorkloadRef, validate_route_name, wait_until, with_retries
from .errors import ControlPlaneUnreachable, RouteNotFound
from .settings import Settings
from .slots import Slot

ARTIFACT_ANNOTATION = "bluegreen/artifact"
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _is_transient(e: BaseException) -> bool:
    if isinstance(e, ApiException):
        return e.status in RETRYABLE_STATUS
    return True


def load_kube_config(kubeconfig: str | None = None) -> None:
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


class KubernetesControlPlane(ControlPlane):
    """Slots are Deployments ``<route>-<slot>``; the route is the Service ``<route>``.

    The Service's ``spec.selector[<selector_key>]`` names the live slot. Each
    slot also gets its own ClusterIP Service so a candidate can be probed
    before it receives production traffic.
    """

    def __init__(
        self,
        cfg: Settings,
        apps_api: Any | None = None,
        core_api: Any | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.cfg = cfg
        self.namespace = cfg.k8s_namespace
        self.selector_key = cfg.k8s_selector_key
        if apps_api is None or core_api is None:
            load_kube_config(cfg.kubeconfig)
        self.apps_v1 = apps_api or client.AppsV1Api()
        self.core_v1 = core_api or client.CoreV1Api()
        self._sleep = sleep

    def _retry(self, fn: Callable[[], Any]) -> Any:
        kwargs: dict[str, Any] = {"should_retry": _is_transient}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return with_retries(
            fn,
            self.cfg.control_plane_retries,
            self.cfg.control_plane_backoff_s,
            (ApiException, Urllib3HTTPError),
            **kwargs,
        )

    # --- manifests ---

    def deployment_name(self, route: str, slot: Slot) -> str:
        return f"{route}-{slot.label}"

    def _labels(self, route: str, slot: Slot) -> dict[str, str]:
        return {"app": route, self.selector_key: slot.label}

    def deployment_manifest(self, route: str, slot: Slot, artifact_ref: str) -> dict[str, Any]:
        labels = self._labels(route, slot)
        port = int(self.cfg.container_port)
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": self.deployment_name(route, slot), "labels": dict(labels)},
            "spec": {
                "replicas": max(1, int(self.cfg.replicas)),
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels), "annotations": {ARTIFACT_ANNOTATION: artifact_ref}},
                    "spec": {
                        "containers": [
                            {
                                "name": route,
                                "image": artifact_ref,
                                "ports": [{"containerPort": port}],
                                "env": [
                                    {"name": "BG_ROUTE", "value": route},
                                    {"name": "BG_SLOT", "value": slot.label},
                                ],
                                "readinessProbe": {
                                    "httpGet": {"path": self.cfg.health_path, "port": port},
                                    "periodSeconds": 5,
                                },
                            }
                        ]
                    },
                },
            },
        }

    def service_manifest(self, name: str, selector: dict[str, str]) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "labels": {"app": selector["app"]}},
            "spec": {
                "selector": dict(selector),
                "ports": [{"port": 80, "targetPort": int(self.cfg.container_port)}],
            },
        }

    # --- routes ---

    def get_active_slot(self, route: str) -> Slot:
        try:
            svc = self._retry(lambda: self.core_v1.read_namespaced_service(name=route, namespace=self.namespace))
        except ApiException as e:
            if e.status == 404:
                raise RouteNotFound(f"Service '{route}' not found in namespace '{self.namespace}'.") from e
            raise ControlPlaneUnreachable(f"Cannot read service '{route}': HTTP {e.status} {e.reason}") from e
        except Urllib3HTTPError as e:
            raise ControlPlaneUnreachable(f"Cannot reach the API server: {e}") from e
        selector = (svc.spec.selector if svc.spec else None) or {}
        try:
            return Slot.parse(selector.get(self.selector_key))
        except ValueError as e:
            raise ControlPlaneUnreachable(
                f"Service '{route}' selector '{self.selector_key}' is malformed: {e}"
            ) from e

    def ensure_route(self, route: str, slot: Slot) -> Slot:
        validate_route_name(route)
        try:
            return self.get_active_slot(route)
        except RouteNotFound:
            body = self.service_manifest(route, self._labels(route, slot))
            self.core_v1.create_namespaced_service(namespace=self.namespace, body=body)
            db.log_event("INFO", f"Created service {route} selecting slot {slot.label}", route=route, to_slot=slot.label)
            return slot

    def set_active_slot(self, route: str, slot: Slot) -> None:
        # A single selector patch: readers see either the old or the new slot.
        body = {"spec": {"selector": self._labels(route, slot)}}
        self.core_v1.patch_namespaced_service(name=route, namespace=self.namespace, body=body)

    # --- workloads ---

    def _ensure_slot_service(self, route: str, slot: Slot) -> None:
        body = self.service_manifest(self.deployment_name(route, slot), self._labels(route, slot))
        try:
            self._retry(lambda: self.core_v1.create_namespaced_service(namespace=self.namespace, body=body))
        except ApiException as e:
            if e.status != 409:
                raise

    def apply_workload(self, route: str, slot: Slot, artifact_ref: str) -> WorkloadRef:
        validate_route_name(route)
        name = self.deployment_name(route, slot)
        body = self.deployment_manifest(route, slot, artifact_ref)
        self._ensure_slot_service(route, slot)
        try:
            self._retry(lambda: self.apps_v1.read_namespaced_deployment(name=name, namespace=self.namespace))
        except ApiException as e:
            if e.status != 404:
                raise
            self._retry(lambda: self.apps_v1.create_namespaced_deployment(namespace=self.namespace, body=body))
            db.log_event("INFO", f"Created deployment {name} from image {artifact_ref}", route=route, to_slot=slot.label)
        else:
            self._retry(
                lambda: self.apps_v1.patch_namespaced_deployment(name=name, namespace=self.namespace, body=body)
            )
            db.log_event("INFO", f"Patched deployment {name} to image {artifact_ref}", route=route, to_slot=slot.label)
        return WorkloadRef(route=route, slot=slot, artifact_ref=artifact_ref, names=(name,))

    def delete_workload(self, route: str, slot: Slot) -> None:
        name = self.deployment_name(route, slot)
        for delete in (self.apps_v1.delete_namespaced_deployment, self.core_v1.delete_namespaced_service):
            try:
                self._retry(lambda: delete(name=name, namespace=self.namespace))
            except ApiException as e:
                if e.status != 404:
                    raise
        db.log_event("INFO", f"Deleted workload {name}", route=route, from_slot=slot.label)

    def _ready(self, route: str, slot: Slot) -> bool:
        try:
            dep = self.apps_v1.read_namespaced_deployment(
                name=self.deployment_name(route, slot), namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404 or e.status in RETRYABLE_STATUS:
                return False
            raise
        desired = (dep.spec.replicas if dep.spec and dep.spec.replicas is not None else 1)
        status = dep.status
        if status is None:
            return False
        generation = dep.metadata.generation if dep.metadata else None
        if generation is not None and (status.observed_generation or 0) < generation:
            return False
        return (status.updated_replicas or 0) >= desired and (status.ready_replicas or 0) >= desired

    def wait_for_rollout_ready(
        self, route: str, slot: Slot, timeout_s: float, cancel: threading.Event | None = None
    ) -> bool:
        return wait_until(lambda: self._ready(route, slot), timeout_s, interval_s=2.0, cancel=cancel)

    def workload_endpoint(self, route: str, slot: Slot) -> str:
        host = f"{self.deployment_name(route, slot)}.{self.namespace}.svc.cluster.local"
        return f"http://{host}{self.cfg.health_path}"
