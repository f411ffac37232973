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
Pydantic schemas for the sandbox manager API.

Request bodies carry named parameters with camelCase aliases; every
response is wrapped as ``{"data": <result>}``.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from sandbox_manager.services.models import SandboxIdentity


# ============================================================================
# Sandbox references
# ============================================================================

class SandboxRef(BaseModel):
    """
    Names a sandbox either by id or by its ``(user, session, kind)`` identity.

    The sandbox id wins when both are present.
    """
    sandbox_id: Optional[str] = Field(None, alias="sandboxId", description="Container name of the sandbox")
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    sandbox_type: Optional[str] = Field(None, alias="sandboxType")

    def identity(self) -> Optional[SandboxIdentity]:
        if self.user_id is None or self.session_id is None or not self.sandbox_type:
            return None
        return SandboxIdentity(self.user_id, self.session_id, self.sandbox_type)

    def target(self):
        """Sandbox id if given, else the identity, else None."""
        return self.sandbox_id or self.identity()

    class Config:
        populate_by_name = True


class CreateContainerRequest(BaseModel):
    """
    Provision (or reuse) the sandbox for an identity.
    """
    user_id: str = Field(..., alias="userId", description="Owner of the sandbox")
    session_id: str = Field(..., alias="sessionId", description="Agent session the sandbox belongs to")
    sandbox_type: str = Field("base", alias="sandboxType", description="Registered sandbox kind")
    environment: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Environment overrides, merged key by key over the kind defaults",
    )
    storage_path: Optional[str] = Field(
        None,
        alias="storagePath",
        description="Logical storage path used to hydrate and persist /workspace",
    )
    mount_dir: Optional[str] = Field(
        None,
        alias="mountDir",
        description="Host working directory to mount; generated under storage.mount_dir when omitted",
    )
    image_id: Optional[str] = Field(None, alias="imageId", description="Image overriding the kind default")
    labels: Dict[str, str] = Field(default_factory=dict, description="Labels attached to the backend resource")

    @field_validator("sandbox_type")
    @classmethod
    def validate_sandbox_type(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("sandboxType cannot be empty")
        return v.strip().lower()

    def identity(self) -> SandboxIdentity:
        return SandboxIdentity(self.user_id, self.session_id, self.sandbox_type)

    class Config:
        populate_by_name = True


# ============================================================================
# Tool invocation
# ============================================================================

class ToolTarget(BaseModel):
    sandbox_id: Optional[str] = Field(None, alias="sandboxId")
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")

    class Config:
        populate_by_name = True


class ListToolsRequest(ToolTarget):
    tool_type: Optional[str] = Field(None, alias="toolType", description="Only return this tool group")


class CallToolRequest(ToolTarget):
    tool_name: str = Field(..., alias="toolName")
    arguments: Dict[str, Any] = Field(default_factory=dict)


class AddMcpServersRequest(ToolTarget):
    server_configs: Dict[str, Any] = Field(..., alias="serverConfigs")
    overwrite: bool = False


# ============================================================================
# Responses
# ============================================================================

class DataResponse(BaseModel):
    """Envelope of every ``/sandbox/*`` response."""
    data: Any = None


class ErrorResponse(BaseModel):
    """
    Standard error response.
    """
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
