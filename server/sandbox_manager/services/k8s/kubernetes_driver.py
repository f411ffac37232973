# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Kubernetes-based implementation of ContainerDriver.

Each sandbox is a single-replica Deployment labelled ``app=<name>`` exposed
through a ``LoadBalancer`` Service named ``<name>-svc``. Host paths cannot be
mounted, so working-directory hydration is skipped on this backend.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import status
from kubernetes.client import (
    ApiException,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EmptyDirVolumeSource,
    V1EnvVar,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ResourceRequirements,
    V1SecurityContext,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)

from sandbox_manager.config import AppConfig, get_config
from sandbox_manager.services.constants import (
    CONTAINER_PORT,
    STATUS_NOT_FOUND,
    SandboxErrorCodes,
)
from sandbox_manager.services.driver import ContainerDriver, timed_operation
from sandbox_manager.services.errors import ProvisioningError, SandboxError
from sandbox_manager.services.helpers import parse_bool, parse_memory_limit, parse_nano_cpus
from sandbox_manager.services.k8s.client import K8sClient
from sandbox_manager.services.models import CreateResult, VolumeBinding

logger = logging.getLogger(__name__)

SERVICE_PORT = 80


def _service_name(name: str) -> str:
    return f"{name}-svc"


class KubernetesDriver(ContainerDriver):
    """
    Container driver backed by Kubernetes Deployments.

    Scheduler naming rules forbid underscores, so names are translated to
    hyphens by ``container_name``.
    """

    name = "kubernetes"
    supports_bind_mounts = False
    supports_remove = True
    supports_image_pull = False
    uses_host_ports = False
    allows_underscores = False

    def __init__(self, config: Optional[AppConfig] = None, k8s_client: Optional[K8sClient] = None):
        """
        Initialize the Kubernetes driver.

        Raises:
            SandboxError: If cluster credentials cannot be loaded
        """
        self.app_config = config or get_config()
        self.namespace = self.app_config.kubernetes.namespace
        self.ready_timeout = self.app_config.kubernetes.ready_timeout
        try:
            self.k8s_client = k8s_client if k8s_client is not None else K8sClient(self.app_config.kubernetes)
        except Exception as e:
            logger.error("Failed to initialize Kubernetes client: %s", e)
            raise SandboxError(
                f"Failed to initialize Kubernetes client: {str(e)}",
                code=SandboxErrorCodes.K8S_INITIALIZATION_ERROR,
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            ) from e
        self.core_api = self.k8s_client.get_core_v1_api()
        self.apps_api = self.k8s_client.get_apps_v1_api()
        logger.info("KubernetesDriver initialized: namespace=%s", self.namespace)

    @staticmethod
    def _container_port() -> int:
        return int(CONTAINER_PORT.split("/")[0])

    def _build_deployment(
        self,
        name: str,
        image: str,
        env: Dict[str, str],
        runtime_config: Dict[str, Any],
        extra_labels: Optional[Dict[str, str]] = None,
    ) -> V1Deployment:
        selector = {"app": name}
        labels = {**(extra_labels or {}), **selector}
        limits: Dict[str, str] = {}
        mem_limit = parse_memory_limit(runtime_config.get("mem_limit"))
        if mem_limit:
            limits["memory"] = str(mem_limit)
        nano_cpus = parse_nano_cpus(runtime_config.get("nano_cpus"))
        if nano_cpus:
            limits["cpu"] = f"{max(nano_cpus // 1_000_000, 1)}m"
        if parse_bool(runtime_config.get("enable_gpu", False)):
            limits["nvidia.com/gpu"] = "1"

        volumes: List[V1Volume] = []
        volume_mounts: List[V1VolumeMount] = []
        shm_size = parse_memory_limit(runtime_config.get("shm_size"))
        if shm_size:
            volumes.append(
                V1Volume(name="dshm", empty_dir=V1EmptyDirVolumeSource(medium="Memory", size_limit=str(shm_size)))
            )
            volume_mounts.append(V1VolumeMount(name="dshm", mount_path="/dev/shm"))

        security_context = None
        if "privileged" in runtime_config:
            security_context = V1SecurityContext(privileged=parse_bool(runtime_config["privileged"]))

        container = V1Container(
            name="sandbox",
            image=image,
            env=[V1EnvVar(name=key, value=value) for key, value in env.items()],
            ports=[V1ContainerPort(container_port=self._container_port(), protocol="TCP")],
            resources=V1ResourceRequirements(limits=limits) if limits else None,
            security_context=security_context,
            volume_mounts=volume_mounts or None,
        )
        return V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=V1ObjectMeta(name=name, labels=labels),
            spec=V1DeploymentSpec(
                replicas=1,
                selector=V1LabelSelector(match_labels=selector),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(labels=labels),
                    spec=V1PodSpec(containers=[container], volumes=volumes or None),
                ),
            ),
        )

    def _build_service(self, name: str) -> V1Service:
        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(name=_service_name(name)),
            spec=V1ServiceSpec(
                type="LoadBalancer",
                selector={"app": name},
                ports=[
                    V1ServicePort(
                        name="port-1",
                        port=SERVICE_PORT,
                        target_port=self._container_port(),
                        protocol="TCP",
                    )
                ],
            ),
        )

    def create_container(
        self,
        name: str,
        image: str,
        ports: List[int],
        volume_bindings: List[VolumeBinding],
        env: Dict[str, str],
        runtime_config: Dict[str, Any],
        labels: Optional[Dict[str, str]] = None,
    ) -> CreateResult:
        if volume_bindings:
            logger.warning("sandbox=%s | ignoring %d volume binding(s) on Kubernetes", name, len(volume_bindings))
        try:
            with timed_operation("create deployment", name):
                self.apps_api.create_namespaced_deployment(
                    namespace=self.namespace,
                    body=self._build_deployment(name, image, env, runtime_config, labels),
                )
            with timed_operation("create load balancer service", name):
                self.core_api.create_namespaced_service(
                    namespace=self.namespace,
                    body=self._build_service(name),
                )
        except ApiException as exc:
            self._rollback(name)
            raise ProvisioningError(
                f"Failed to create deployment/service for {name}: {exc.reason}",
                code=SandboxErrorCodes.K8S_API_ERROR,
            ) from exc

        return CreateResult(
            container_id=name,
            ip=self.app_config.runtime.host,
            ports=[SERVICE_PORT],
            protocol=self.app_config.runtime.protocol,
        )

    def _delete_resources(self, name: str) -> List[ApiException]:
        """Delete the Deployment and its Service independently. A 404 counts as deleted."""
        failures: List[ApiException] = []
        for resource, delete in (
            ("deployment", lambda: self.apps_api.delete_namespaced_deployment(name, self.namespace)),
            ("service", lambda: self.core_api.delete_namespaced_service(_service_name(name), self.namespace)),
        ):
            try:
                delete()
            except ApiException as exc:
                if exc.status == 404:
                    logger.info("sandbox=%s | %s already gone", name, resource)
                    continue
                logger.warning("sandbox=%s | failed to delete %s: %s", name, resource, exc.reason)
                failures.append(exc)
        return failures

    def _rollback(self, name: str) -> None:
        self._delete_resources(name)

    def _pod_phase(self, name: str) -> Optional[str]:
        pods = self.core_api.list_namespaced_pod(namespace=self.namespace, label_selector=f"app={name}")
        if not pods.items:
            return None
        return pods.items[0].status.phase

    def _wait_for_running(self, name: str, poll_interval_seconds: float = 1.0) -> None:
        """
        Wait for the Deployment's Pod to reach the Running phase.

        Raises:
            ProvisioningError: If the Pod fails or the timeout expires
        """
        start_time = time.time()
        last_phase = None
        while time.time() - start_time < self.ready_timeout:
            try:
                phase = self._pod_phase(name)
            except ApiException as exc:
                logger.warning("Error checking sandbox %s status: %s", name, exc.reason)
                phase = None
            if phase != last_phase:
                logger.info("Sandbox %s pod phase: %s", name, phase)
                last_phase = phase
            if phase == "Running":
                return
            if phase == "Failed":
                raise ProvisioningError(
                    f"Pod for sandbox {name} failed",
                    code=SandboxErrorCodes.K8S_POD_FAILED,
                )
            time.sleep(poll_interval_seconds)

        elapsed = time.time() - start_time
        raise ProvisioningError(
            f"Timeout waiting for sandbox {name} to be Running. Elapsed: {elapsed:.1f}s, Last phase: {last_phase}",
            code=SandboxErrorCodes.K8S_POD_READY_TIMEOUT,
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        )

    def _scale(self, name: str, replicas: int) -> None:
        self.apps_api.patch_namespaced_deployment_scale(
            name=name,
            namespace=self.namespace,
            body={"spec": {"replicas": replicas}},
        )

    def start_container(self, container_id: str) -> None:
        try:
            with timed_operation("scale deployment up", container_id):
                self._scale(container_id, 1)
        except ApiException as exc:
            raise ProvisioningError(
                f"Failed to start deployment {container_id}: {exc.reason}",
                code=SandboxErrorCodes.K8S_API_ERROR,
            ) from exc
        self._wait_for_running(container_id)

    def stop_container(self, container_id: str) -> None:
        try:
            with timed_operation("scale deployment down", container_id):
                self._scale(container_id, 0)
        except ApiException as exc:
            if exc.status == 404:
                logger.info("Deployment %s already gone; nothing to stop", container_id)
                return
            raise SandboxError(
                f"Failed to stop deployment {container_id}: {exc.reason}",
                code=SandboxErrorCodes.K8S_API_ERROR,
            ) from exc

    def remove_container(self, container_id: str) -> None:
        with timed_operation("delete deployment and service", container_id):
            failures = self._delete_resources(container_id)
        if failures:
            raise SandboxError(
                f"Failed to remove deployment {container_id}: {failures[0].reason}",
                code=SandboxErrorCodes.K8S_API_ERROR,
            ) from failures[0]

    def get_status(self, container_id: str) -> str:
        try:
            self.apps_api.read_namespaced_deployment(container_id, self.namespace)
            phase = self._pod_phase(container_id)
        except ApiException as exc:
            if exc.status == 404:
                return STATUS_NOT_FOUND
            raise SandboxError(
                f"Failed to read deployment {container_id}: {exc.reason}",
                code=SandboxErrorCodes.K8S_API_ERROR,
            ) from exc
        return (phase or "stopped").lower()

    def get_endpoint(self, container_id: str) -> Optional[str]:
        """External address of the sandbox's load balancer, once assigned."""
        try:
            service = self.core_api.read_namespaced_service(_service_name(container_id), self.namespace)
        except ApiException as exc:
            logger.debug("Service for %s not readable: %s", container_id, exc.reason)
            return None
        ingress = (service.status.load_balancer.ingress or []) if service.status and service.status.load_balancer else []
        for entry in ingress:
            address = entry.ip or entry.hostname
            if address:
                return address
        return None
