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
Managed cloud-session implementation of ContainerDriver.

Sessions are requested from the AgentBay cloud by image id and labels. There
are no local ports or volumes. Stopping a session deletes it on the provider
side; a separate remove is not offered and is reported as unsupported.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import status

from sandbox_manager.config import AppConfig, get_config
from sandbox_manager.services.constants import STATUS_NOT_FOUND, STATUS_UNKNOWN, SandboxErrorCodes
from sandbox_manager.services.driver import ContainerDriver, timed_operation
from sandbox_manager.services.errors import (
    BackendUnsupportedOperationError,
    ProvisioningError,
    SandboxError,
)
from sandbox_manager.services.models import CreateResult, VolumeBinding

logger = logging.getLogger(__name__)

# Registered image name that stands for "use the configured cloud image".
PLACEHOLDER_IMAGE = "agentbay-cloud"


class CloudSessionDriver(ContainerDriver):
    name = "cloud"
    supports_bind_mounts = False
    supports_remove = False
    supports_image_pull = False
    uses_host_ports = False
    allows_underscores = False

    def __init__(self, config: Optional[AppConfig] = None, client: Any = None):
        self.app_config = config or get_config()
        self.cloud_config = self.app_config.cloud
        self._client = client

    def _get_client(self):
        """Get or create the AgentBay client (lazy initialization)."""
        if self._client is None:
            if not self.cloud_config.api_key:
                raise SandboxError(
                    "cloud.api_key is required for the cloud runtime",
                    code=SandboxErrorCodes.CLOUD_INITIALIZATION_ERROR,
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                )
            # Only load the SDK when this backend is used.
            from agentbay import AgentBay

            self._client = AgentBay(api_key=self.cloud_config.api_key)
            logger.info("AgentBay client initialized")
        return self._client

    def _new_session_params(self, image_id: str, labels: Dict[str, str]):
        from agentbay import CreateSessionParams

        params = CreateSessionParams()
        params.image_id = image_id
        params.labels = labels
        return params

    def _get_session(self, session_id: str):
        result = self._get_client().get(session_id)
        if not result.success:
            return None
        return result.session

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
        image_id = self.cloud_config.image_id if not image or image == PLACEHOLDER_IMAGE else image
        labels = {**(labels or {}), "sandbox-name": name}
        with timed_operation("create cloud session", name):
            result = self._get_client().create(self._new_session_params(image_id, labels))
        if not result.success:
            raise ProvisioningError(
                f"Failed to create cloud session: {result.error_message}",
                code=SandboxErrorCodes.CLOUD_SESSION_FAILED,
            )
        session_id = result.session.session_id
        logger.info("Cloud session created: %s", session_id)
        return CreateResult(container_id=session_id, ip=None, ports=[], protocol="https")

    def start_container(self, container_id: str) -> None:
        # Sessions run as soon as they are created.
        return None

    def stop_container(self, container_id: str) -> None:
        session = self._get_session(container_id)
        if session is None:
            logger.warning("Cloud session %s not found; nothing to stop", container_id)
            return
        with timed_operation("delete cloud session", container_id):
            result = self._get_client().delete(session)
        if not result.success:
            raise SandboxError(
                f"Failed to stop cloud session {container_id}: {result.error_message}",
                code=SandboxErrorCodes.CLOUD_SESSION_FAILED,
            )

    def remove_container(self, container_id: str) -> None:
        raise BackendUnsupportedOperationError(
            f"Cloud session {container_id} can only be stopped, not removed"
        )

    def get_status(self, container_id: str) -> str:
        session = self._get_session(container_id)
        if session is None:
            return STATUS_NOT_FOUND
        status_result = session.get_status()
        if status_result.success and status_result.status:
            return str(status_result.status).lower()
        return STATUS_UNKNOWN

    def describe(self, container_id: str) -> Optional[Dict[str, Any]]:
        session = self._get_session(container_id)
        if session is None:
            return None
        info = session.info()
        if not info.success:
            return {"error": info.error_message}
        data = info.data
        return {
            "sessionId": data.session_id,
            "resourceId": data.resource_id,
            "resourceUrl": data.resource_url,
            "appId": data.app_id,
            "resourceType": data.resource_type,
            "requestId": info.request_id,
        }
