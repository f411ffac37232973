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
Docker-based implementation of ContainerDriver.

This module runs sandboxes as containers on a local Docker daemon. The
sandbox's container port is published on a host port chosen by the port
allocator and the working directory is bind-mounted into the container.
"""

from __future__ import annotations

import inspect
import logging
import os
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import DeviceRequest, Ulimit
from fastapi import status

from sandbox_manager.config import AppConfig, get_config
from sandbox_manager.services.constants import (
    CONTAINER_PORT,
    STATUS_NOT_FOUND,
    SandboxErrorCodes,
)
from sandbox_manager.services.driver import ContainerDriver, timed_operation
from sandbox_manager.services.errors import ProvisioningError, SandboxError
from sandbox_manager.services.helpers import parse_bool, parse_memory_limit, parse_nano_cpus
from sandbox_manager.services.models import CreateResult, VolumeBinding

logger = logging.getLogger(__name__)


def _resolve_docker_timeout(default: int = 180) -> int:
    env_value = os.environ.get("DOCKER_API_TIMEOUT")
    if not env_value:
        return default
    try:
        timeout = int(env_value)
        if timeout <= 0:
            raise ValueError
        return timeout
    except ValueError:
        logger.warning("Invalid DOCKER_API_TIMEOUT='%s'; falling back to %s seconds.", env_value, default)
        return default


class DockerDriver(ContainerDriver):
    """
    Container driver for a local Docker daemon.

    Docker container names accept underscores, so the configured prefix is
    only lowercased.
    """

    name = "docker"
    supports_bind_mounts = True
    supports_remove = True
    supports_image_pull = True
    uses_host_ports = True
    allows_underscores = True

    def __init__(self, config: Optional[AppConfig] = None):
        """
        Initialize the Docker driver from environment variables.

        The client reads DOCKER_HOST, DOCKER_TLS_VERIFY and DOCKER_CERT_PATH.
        Connection is not verified here; errors surface on the first call.

        Raises:
            SandboxError: If the Docker client cannot be constructed
        """
        self.app_config = config or get_config()
        timeout = _resolve_docker_timeout(self.app_config.docker.api_timeout)
        try:
            client_kwargs = {}
            try:
                signature = inspect.signature(docker.from_env)
                if "timeout" in signature.parameters:
                    client_kwargs["timeout"] = timeout
            except (ValueError, TypeError):
                logger.debug("Unable to introspect docker.from_env signature; using default parameters.")
            self.docker_client = docker.from_env(**client_kwargs)
            logger.info("Docker driver initialized from environment")
        except Exception as e:  # noqa: BLE001
            hint = ""
            if isinstance(e, FileNotFoundError) or "No such file or directory" in str(e):
                hint = (
                    " Docker daemon seems unavailable (unix socket not found). "
                    f"(current DOCKER_HOST='{os.environ.get('DOCKER_HOST', '')}')"
                )
            raise SandboxError(
                f"Failed to initialize Docker client: {str(e)}.{hint}",
                code=SandboxErrorCodes.DOCKER_INITIALIZATION_ERROR,
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            ) from e

    def ensure_image_available(self, image: str) -> bool:
        try:
            with timed_operation(f"inspect image {image}"):
                self.docker_client.images.get(image)
            logger.debug("Using cached image %s", image)
            return True
        except ImageNotFound:
            pass
        except DockerException as exc:
            raise ProvisioningError(
                f"Failed to inspect image {image}: {str(exc)}",
                code=SandboxErrorCodes.IMAGE_PULL_FAILED,
            ) from exc

        try:
            with timed_operation(f"pull image {image}"):
                self.docker_client.images.pull(image)
        except DockerException as exc:
            raise ProvisioningError(
                f"Failed to pull image {image}: {str(exc)}",
                code=SandboxErrorCodes.IMAGE_PULL_FAILED,
            ) from exc
        return True

    @staticmethod
    def _host_config_kwargs(runtime_config: Dict[str, Any]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        mem_limit = parse_memory_limit(runtime_config.get("mem_limit"))
        if mem_limit:
            kwargs["mem_limit"] = mem_limit
        nano_cpus = parse_nano_cpus(runtime_config.get("nano_cpus"))
        if nano_cpus:
            kwargs["nano_cpus"] = nano_cpus
        shm_size = parse_memory_limit(runtime_config.get("shm_size"))
        if shm_size:
            kwargs["shm_size"] = shm_size
        if parse_bool(runtime_config.get("enable_gpu", False)):
            kwargs["device_requests"] = [DeviceRequest(count=-1, capabilities=[["gpu"]])]
        max_connections = runtime_config.get("max_connections")
        if max_connections:
            limit = int(max_connections)
            kwargs["ulimits"] = [Ulimit(name="nofile", soft=limit, hard=limit)]
        if "privileged" in runtime_config:
            kwargs["privileged"] = parse_bool(runtime_config["privileged"])
        return kwargs

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
        port_bindings = {CONTAINER_PORT: ports[0]} if ports else {}
        volumes = {
            binding.host_path: {"bind": binding.container_path, "mode": binding.mode}
            for binding in volume_bindings
        }
        container = None
        try:
            with timed_operation("create sandbox container", name):
                container = self.docker_client.containers.create(
                    image=image,
                    name=name,
                    detach=True,
                    ports=port_bindings,
                    volumes=volumes,
                    environment=env,
                    labels=dict(labels or {}),
                    **self._host_config_kwargs(runtime_config),
                )
        except DockerException as exc:
            raise ProvisioningError(
                f"Failed to create container {name}: {str(exc)}",
                code=SandboxErrorCodes.CONTAINER_CREATE_FAILED,
            ) from exc

        return CreateResult(
            container_id=container.id,
            ip=self.app_config.runtime.host,
            ports=list(ports),
            protocol=self.app_config.runtime.protocol,
        )

    def start_container(self, container_id: str) -> None:
        try:
            with timed_operation("start sandbox container", container_id):
                self.docker_client.containers.get(container_id).start()
        except DockerException as exc:
            raise ProvisioningError(
                f"Failed to start container {container_id}: {str(exc)}",
                code=SandboxErrorCodes.CONTAINER_START_FAILED,
            ) from exc

    def stop_container(self, container_id: str) -> None:
        try:
            with timed_operation("stop sandbox container", container_id):
                self.docker_client.containers.get(container_id).stop()
        except NotFound:
            logger.info("Container %s already gone; nothing to stop", container_id)
        except DockerException as exc:
            raise SandboxError(
                f"Failed to stop container {container_id}: {str(exc)}",
                code=SandboxErrorCodes.CONTAINER_STOP_FAILED,
            ) from exc

    def remove_container(self, container_id: str) -> None:
        try:
            with timed_operation("remove sandbox container", container_id):
                self.docker_client.containers.get(container_id).remove(force=True)
        except NotFound:
            logger.info("Container %s already gone; nothing to remove", container_id)
        except DockerException as exc:
            raise SandboxError(
                f"Failed to remove container {container_id}: {str(exc)}",
                code=SandboxErrorCodes.SANDBOX_DELETE_FAILED,
            ) from exc

    def get_status(self, container_id: str) -> str:
        try:
            container = self.docker_client.containers.get(container_id)
        except NotFound:
            return STATUS_NOT_FOUND
        except APIError as exc:
            raise SandboxError(
                f"Failed to inspect container {container_id}: {str(exc)}",
                code=SandboxErrorCodes.CONTAINER_QUERY_FAILED,
            ) from exc
        state = container.attrs.get("State", {})
        return (state.get("Status") or container.status or "unknown").lower()
