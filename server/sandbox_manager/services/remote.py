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
Client for a centrally hosted sandbox manager.

Every operation is a ``POST <base_url>/sandbox/<op>`` with a JSON body of
named parameters; the server answers ``{"data": <result>}``. Results are
decoded into the same types the local orchestrator returns.
"""

import logging
from typing import Any, Dict, Optional, Union

import httpx
from fastapi import status

from sandbox_manager.services.constants import STATUS_UNKNOWN, SandboxErrorCodes
from sandbox_manager.services.errors import SandboxError
from sandbox_manager.services.models import ContainerRecord, ReleaseResult, SandboxIdentity
from sandbox_manager.services.wire import error_payload

logger = logging.getLogger(__name__)

SandboxTarget = Union[SandboxIdentity, str]


def _target_payload(target: SandboxTarget) -> Dict[str, Any]:
    if isinstance(target, SandboxIdentity):
        return target.to_dict()
    return {"sandboxId": target}


def _error_message(response: httpx.Response) -> tuple:
    """Extract ``(code, message)`` from an error response body."""
    try:
        body = response.json()
    except ValueError:
        return SandboxErrorCodes.REMOTE_REQUEST_FAILED, response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict):
            return detail.get("code") or SandboxErrorCodes.REMOTE_REQUEST_FAILED, detail.get("message") or str(detail)
        if body.get("code") and body.get("message"):
            return body["code"], body["message"]
        for key in ("detail", "error", "message"):
            if body.get(key):
                return SandboxErrorCodes.REMOTE_REQUEST_FAILED, str(body[key])
    return SandboxErrorCodes.REMOTE_REQUEST_FAILED, f"HTTP {response.status_code}"


class RemoteSandboxClient:
    """Forwards orchestrator operations to another sandbox manager."""

    def __init__(
        self,
        base_url: str,
        bearer_token: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info("Remote sandbox client initialized: %s", self.base_url)

    def close_client(self) -> None:
        self._client.close()

    def request(self, operation: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """
        Send one operation and return the ``data`` field of the reply.

        Raises:
            SandboxError: On transport failure or a non-2xx reply
        """
        try:
            response = self._client.post(f"/sandbox/{operation}", json=payload or {})
        except httpx.HTTPError as exc:
            logger.error("Remote %s failed: %s", operation, exc)
            raise SandboxError(
                f"Remote request {operation} failed: {exc}",
                code=SandboxErrorCodes.REMOTE_REQUEST_FAILED,
                status_code=status.HTTP_502_BAD_GATEWAY,
            ) from exc
        if not response.is_success:
            code, message = _error_message(response)
            logger.warning("Remote %s returned HTTP %s: %s", operation, response.status_code, message)
            raise SandboxError(message, code=code, status_code=response.status_code)
        body = response.json() if response.content else {}
        return body.get("data") if isinstance(body, dict) else None

    def provision(
        self,
        identity: SandboxIdentity,
        env: Optional[Dict[str, str]] = None,
        storage_path: Optional[str] = None,
        mount_dir: Optional[str] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> ContainerRecord:
        payload = identity.to_dict()
        payload["environment"] = env or {}
        optional = {"storagePath": storage_path, "mountDir": mount_dir, "imageId": image_id, "labels": labels}
        payload.update({key: value for key, value in optional.items() if value})
        data = self.request("createContainer", payload)
        if not isinstance(data, dict):
            raise SandboxError(
                "Remote createContainer returned no container",
                code=SandboxErrorCodes.REMOTE_REQUEST_FAILED,
                status_code=status.HTTP_502_BAD_GATEWAY,
            )
        return ContainerRecord.from_dict(data)

    def start(self, sandbox_id: str) -> bool:
        return bool(self.request("startSandbox", _target_payload(sandbox_id)))

    def stop(self, sandbox_id: str) -> bool:
        return bool(self.request("stopSandbox", _target_payload(sandbox_id)))

    def remove(self, sandbox_id: str) -> bool:
        return bool(self.request("removeSandbox", _target_payload(sandbox_id)))

    def release(self, target: SandboxTarget) -> ReleaseResult:
        data = self.request("releaseSandbox", _target_payload(target))
        return ReleaseResult.from_dict(data or {})

    def close(self, target: SandboxTarget) -> bool:
        return bool(self.request("closeSandbox", _target_payload(target)))

    def get_status(self, target: SandboxTarget) -> str:
        data = self.request("getSandboxStatus", _target_payload(target))
        return data if isinstance(data, str) else STATUS_UNKNOWN

    def get_info(self, sandbox_id: str) -> ContainerRecord:
        data = self.request("getInfo", _target_payload(sandbox_id))
        if not isinstance(data, dict):
            raise SandboxError(
                f"Remote getInfo returned nothing for {sandbox_id}",
                code=SandboxErrorCodes.SANDBOX_NOT_FOUND,
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return ContainerRecord.from_dict(data)

    def cleanup_all(self) -> int:
        return int(self.request("cleanup") or 0)

    def list_tools(
        self,
        sandbox_id: Optional[str],
        owner_id: Optional[str],
        session_id: Optional[str],
        tool_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = self.request(
            "listTools",
            {"sandboxId": sandbox_id, "userId": owner_id, "sessionId": session_id, "toolType": tool_type},
        )
        return data if isinstance(data, dict) else {}

    def call_tool(
        self,
        sandbox_id: Optional[str],
        owner_id: Optional[str],
        session_id: Optional[str],
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> str:
        data = self.request(
            "callTool",
            {
                "sandboxId": sandbox_id,
                "userId": owner_id,
                "sessionId": session_id,
                "toolName": name,
                "arguments": arguments or {},
            },
        )
        if isinstance(data, str):
            return data
        return error_payload("Invalid response from remote callTool")

    def add_mcp_servers(
        self,
        sandbox_id: Optional[str],
        owner_id: Optional[str],
        session_id: Optional[str],
        server_configs: Dict[str, Any],
        overwrite: bool = False,
    ) -> Dict[str, Any]:
        data = self.request(
            "addMcpServers",
            {
                "sandboxId": sandbox_id,
                "userId": owner_id,
                "sessionId": session_id,
                "serverConfigs": server_configs,
                "overwrite": overwrite,
            },
        )
        return data if isinstance(data, dict) else {}


__all__ = ["RemoteSandboxClient", "SandboxTarget"]
