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
Exception taxonomy for sandbox services.

Every error carries a canonical code from ``SandboxErrorCodes`` and the HTTP
status the API layer should answer with, so that drivers, the orchestrator
and the routes share one error shape: ``{"code": ..., "message": ...}``.
"""

from typing import Dict, Optional

from fastapi import status

from sandbox_manager.services.constants import SandboxErrorCodes


class SandboxError(Exception):
    """Base class for sandbox service failures."""

    default_code = SandboxErrorCodes.UNKNOWN_ERROR
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status

    def to_detail(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class ProvisioningError(SandboxError):
    """Image, backend create/start or port allocation failure."""

    default_code = SandboxErrorCodes.CONTAINER_CREATE_FAILED


class PortExhaustedError(ProvisioningError):
    default_code = SandboxErrorCodes.PORT_EXHAUSTED
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE


class StorageSyncError(SandboxError):
    default_code = SandboxErrorCodes.STORAGE_SYNC_FAILED


class ToolInvocationError(SandboxError):
    """Raised inside wire clients; converted to an error payload before leaving them."""

    default_code = SandboxErrorCodes.TOOL_INVOCATION_FAILED
    default_status = status.HTTP_502_BAD_GATEWAY


class BackendUnsupportedOperationError(SandboxError):
    default_code = SandboxErrorCodes.API_NOT_SUPPORTED
    default_status = status.HTTP_501_NOT_IMPLEMENTED


class RegistryInconsistencyError(SandboxError):
    default_code = SandboxErrorCodes.REGISTRY_INCONSISTENT


class SandboxNotFoundError(SandboxError):
    default_code = SandboxErrorCodes.SANDBOX_NOT_FOUND
    default_status = status.HTTP_404_NOT_FOUND


__all__ = [
    "BackendUnsupportedOperationError",
    "PortExhaustedError",
    "ProvisioningError",
    "RegistryInconsistencyError",
    "SandboxError",
    "SandboxNotFoundError",
    "StorageSyncError",
    "ToolInvocationError",
]
