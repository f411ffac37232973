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
Abstract container driver interface.

A driver performs create/start/stop/remove/status against one backend. Each
driver declares which optional capabilities it has so that the orchestrator
can branch on capability instead of on backend type.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sandbox_manager.services.models import CreateResult, VolumeBinding

logger = logging.getLogger(__name__)


@contextmanager
def timed_operation(action: str, sandbox_id: Optional[str] = None):
    """Context manager to log duration for backend API calls."""
    op_id = sandbox_id or "shared"
    start = time.perf_counter()
    try:
        yield
    except Exception as exc:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.warning(
            "sandbox=%s | action=%s | duration=%.2f | error=%s",
            op_id,
            action,
            elapsed_ms,
            exc,
        )
        raise
    else:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "sandbox=%s | action=%s | duration=%.2f",
            op_id,
            action,
            elapsed_ms,
        )


class ContainerDriver(ABC):
    """
    Uniform lifecycle operations over one container backend.

    Capability flags:
        supports_bind_mounts: host directories can be mounted into containers
        supports_remove: ``remove_container`` is meaningful for this backend
        supports_image_pull: images can be verified/pulled before create
        uses_host_ports: the backend publishes containers on allocated host ports
        allows_underscores: container names may contain ``_``
    """

    name = "base"
    supports_bind_mounts = False
    supports_remove = True
    supports_image_pull = False
    uses_host_ports = False
    allows_underscores = False

    def container_name(self, prefix: str, token: str) -> str:
        """Build a backend-valid container name from ``prefix`` and ``token``."""
        name = f"{prefix}{token}".lower()
        if not self.allows_underscores:
            name = name.replace("_", "-")
        return name

    @abstractmethod
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
        """
        Create (but do not start) a container.

        Args:
            name: Backend-valid container name
            image: Image reference
            ports: Host ports allocated for the container port
            volume_bindings: Host directories to mount (bind-mount backends only)
            env: Environment variables
            runtime_config: Backend specific options registered for the kind
            labels: Caller supplied labels attached to the backend resource

        Returns:
            CreateResult with container id, address, ports and protocol

        Raises:
            ProvisioningError: If the backend rejects the request
        """

    @abstractmethod
    def start_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    def stop_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    def remove_container(self, container_id: str) -> None:
        """
        Delete the container.

        Raises:
            BackendUnsupportedOperationError: If the backend cannot remove resources
        """

    @abstractmethod
    def get_status(self, container_id: str) -> str:
        """Return a lowercase backend status string, or ``not_found``."""

    def ensure_image_available(self, image: str) -> bool:
        """Verify or pull ``image``. Backends without image management report True."""
        return True

    def get_endpoint(self, container_id: str) -> Optional[str]:
        """Address assigned by the backend after start, when it differs from the configured host."""
        return None

    def describe(self, container_id: str) -> Optional[Dict[str, Any]]:
        """Backend specific details worth showing next to the record, if any."""
        return None
