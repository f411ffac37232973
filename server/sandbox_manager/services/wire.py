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
Clients for the tool protocol spoken by running sandboxes.

Two variants exist: ``SandboxHttpClient`` for the generic tool server and
``TrainingSandboxClient`` for training-environment images, which expose
create/step/evaluate style operations instead. ``connect`` picks one from the
record's image tag. Tool failures are returned as structured error payloads
and never escape as exceptions.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional, Union

import httpx

from sandbox_manager.services.errors import ToolInvocationError
from sandbox_manager.services.models import ContainerRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60
TRAINING_IMAGE_MARKERS = ("sandbox-appworld", "sandbox-bfcl")
GENERIC_TOOLS = ("run_ipython_cell", "run_shell_command")


def error_payload(message: str) -> str:
    """Tool error in the shape agents expect from a failed call."""
    return json.dumps({"isError": True, "content": [{"type": "text", "text": message}]})


def _generic_tools_schema() -> Dict[str, Any]:
    def _tool(name: str, description: str, param: str, param_description: str) -> Dict[str, Any]:
        return {
            "name": name,
            "json_schema": {
                "type": "function",
                "function": {
                    "name": name,
                    "description": description,
                    "parameters": {
                        "type": "object",
                        "properties": {param: {"type": "string", "description": param_description}},
                        "required": [param],
                    },
                },
            },
        }

    return {
        "run_ipython_cell": _tool("run_ipython_cell", "Run an IPython cell.", "code", "IPython code to execute"),
        "run_shell_command": _tool("run_shell_command", "Run a shell command.", "command", "Shell command to execute"),
    }


class SandboxHttpClient:
    """Client for the generic tool server inside a sandbox."""

    def __init__(
        self,
        record: ContainerRecord,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not record.base_url:
            raise ToolInvocationError(f"Sandbox {record.sandbox_id} exposes no tool endpoint")
        self.record = record
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=record.base_url,
            headers={
                "Authorization": f"Bearer {record.runtime_token or ''}",
                "x-agentrun-session-id": f"s{record.session_id}",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SandboxHttpClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def check_health(self) -> bool:
        try:
            response = self._client.get("/healthz", timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def wait_until_healthy(self, timeout: Optional[float] = None, poll_interval: float = 1.0) -> None:
        """
        Poll ``/healthz`` until it answers 200.

        Raises:
            ToolInvocationError: If the sandbox is not healthy within ``timeout``
        """
        deadline = time.monotonic() + (timeout if timeout is not None else self.timeout)
        while time.monotonic() < deadline:
            if self.check_health():
                logger.info("Sandbox service is healthy: %s", self.record.base_url)
                return
            time.sleep(poll_interval)
        raise ToolInvocationError(
            f"Sandbox service {self.record.sandbox_id} did not become healthy within {timeout or self.timeout}s"
        )

    def list_tools(self, tool_type: Optional[str] = None) -> Dict[str, Any]:
        try:
            response = self._client.get("/mcp/list_tools")
        except httpx.HTTPError as exc:
            logger.error("Error listing tools for %s: %s", self.record.sandbox_id, exc)
            return {}
        if response.status_code != 200:
            logger.warning("Failed to list tools: HTTP %s", response.status_code)
            return {}
        tools = response.json() or {}
        tools["generic"] = _generic_tools_schema()
        if tool_type:
            return {tool_type: tools.get(tool_type, {})}
        return tools

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        arguments = arguments or {}
        if name in GENERIC_TOOLS:
            path, body = f"/tools/{name}", arguments
        else:
            path, body = "/mcp/call_tool", {"tool_name": name, "arguments": arguments}
        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.error("Error calling tool %s on %s: %s", name, self.record.sandbox_id, exc)
            return error_payload(f"Error calling tool {name}: {exc}")
        if response.status_code != 200:
            return error_payload(f"HTTP {response.status_code}: {response.text}")
        return response.text

    def add_mcp_servers(self, server_configs: Dict[str, Any], overwrite: bool = False) -> Dict[str, Any]:
        try:
            response = self._client.post(
                "/mcp/add_servers",
                json={"server_configs": server_configs, "overwrite": overwrite},
            )
        except httpx.HTTPError as exc:
            logger.error("Error adding MCP servers to %s: %s", self.record.sandbox_id, exc)
            return json.loads(error_payload(f"Error adding MCP servers: {exc}"))
        if response.status_code != 200:
            return json.loads(error_payload(f"HTTP {response.status_code}: {response.text}"))
        return response.json()


class TrainingSandboxClient:
    """
    Client for training-environment sandboxes.

    These servers live one level above ``/fastapi`` and take every request as
    ``{env_type, task_id, instance_id, messages, params}``.
    """

    def __init__(
        self,
        record: ContainerRecord,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not record.base_url:
            raise ToolInvocationError(f"Sandbox {record.sandbox_id} exposes no tool endpoint")
        self.record = record
        self.timeout = timeout
        self.base_url = record.base_url.rstrip("/").rsplit("/", 1)[0]
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TrainingSandboxClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def check_health(self) -> bool:
        try:
            response = self._client.get("/healthz", timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def wait_until_healthy(self, timeout: Optional[float] = None, poll_interval: float = 1.0) -> None:
        deadline = time.monotonic() + (timeout if timeout is not None else self.timeout)
        while time.monotonic() < deadline:
            if self.check_health():
                logger.info("Training sandbox service is healthy: %s", self.base_url)
                return
            time.sleep(poll_interval)
        raise ToolInvocationError(
            f"Training sandbox {self.record.sandbox_id} did not become healthy within {timeout or self.timeout}s"
        )

    def _request(
        self,
        endpoint: str,
        env_type: Optional[str] = None,
        task_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        messages: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"messages": messages or {}, "params": params or {}}
        if env_type is not None:
            body["env_type"] = env_type
        if task_id is not None:
            body["task_id"] = task_id
        if instance_id is not None:
            body["instance_id"] = instance_id
        try:
            response = self._client.post(f"/{endpoint}", json=body)
        except httpx.HTTPError as exc:
            raise ToolInvocationError(f"Error calling {endpoint}: {exc}") from exc
        if response.status_code != 200:
            raise ToolInvocationError(f"HTTP {response.status_code}: {response.text}")
        return response.json()

    def get_env_profile(self, env_type: str, split: str = "train", params: Optional[Dict[str, Any]] = None) -> Any:
        merged = dict(params or {})
        merged["split"] = split
        return self._request("get_env_profile", env_type=env_type, params=merged).get("data")

    def get_tools_info(self, instance_id: str, messages=None, params=None) -> Any:
        return self._request("get_info", instance_id=instance_id, messages=messages, params=params).get("data")

    def create_instance(self, env_type: str, task_id: str, instance_id=None, params=None) -> Any:
        return self._request(
            "create", env_type=env_type, task_id=task_id, instance_id=instance_id, params=params
        ).get("data")

    def step(self, instance_id: str, action=None, params=None) -> Any:
        return self._request("step", instance_id=instance_id, messages=action, params=params).get("data")

    def evaluate(self, instance_id: str, messages=None, params=None) -> Any:
        return self._request("evaluate", instance_id=instance_id, messages=messages, params=params).get("data")

    def release_instance(self, instance_id: str) -> str:
        response = self._request("release", instance_id=instance_id)
        return "success" if response.get("success") else "failure"

    def list_tools(self, tool_type: Optional[str] = None, instance_id: Optional[str] = None) -> Dict[str, Any]:
        if not instance_id:
            return {}
        try:
            return {"instance": self.get_tools_info(instance_id)}
        except ToolInvocationError as exc:
            logger.error("Error listing training tools: %s", exc.message)
            return {}

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        arguments = arguments or {}

        def _map(key: str) -> Dict[str, Any]:
            value = arguments.get(key)
            return value if isinstance(value, dict) else {}

        try:
            if name == "create_instance":
                result = self.create_instance(
                    arguments.get("env_type"),
                    arguments.get("task_id"),
                    arguments.get("instance_id"),
                    _map("params"),
                )
            elif name == "release_instance":
                return self.release_instance(arguments.get("instance_id"))
            elif name == "evaluate":
                result = self.evaluate(arguments.get("instance_id"), _map("messages"), _map("params"))
            elif name == "step":
                result = self.step(arguments.get("instance_id"), _map("action"), _map("params"))
            elif name in ("get_task_ids", "get_env_profile"):
                result = self.get_env_profile(
                    arguments.get("env_type"),
                    arguments.get("split", "train"),
                    _map("params"),
                )
            else:
                logger.warning("Unknown training tool: %s", name)
                return error_payload(f"Unknown tool: {name}")
        except ToolInvocationError as exc:
            return error_payload(exc.message)
        return json.dumps(result)

    def add_mcp_servers(self, server_configs: Dict[str, Any], overwrite: bool = False) -> Dict[str, Any]:
        return json.loads(error_payload("Training sandboxes do not accept MCP servers"))


WireClient = Union[SandboxHttpClient, TrainingSandboxClient]


def is_training_image(version: Optional[str]) -> bool:
    return bool(version) and any(marker in version for marker in TRAINING_IMAGE_MARKERS)


def connect(
    record: ContainerRecord,
    timeout: float = DEFAULT_TIMEOUT,
    transport: Optional[httpx.BaseTransport] = None,
) -> WireClient:
    """Build the wire client matching the record's image tag."""
    if is_training_image(record.version):
        return TrainingSandboxClient(record, timeout=timeout, transport=transport)
    return SandboxHttpClient(record, timeout=timeout, transport=transport)


__all__ = [
    "SandboxHttpClient",
    "TrainingSandboxClient",
    "WireClient",
    "connect",
    "error_payload",
    "is_training_image",
]
