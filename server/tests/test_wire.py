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

import json

import httpx
import pytest

from sandbox_manager.services.errors import ToolInvocationError
from sandbox_manager.services.models import ContainerRecord
from sandbox_manager.services.wire import (
    SandboxHttpClient,
    TrainingSandboxClient,
    connect,
    error_payload,
    is_training_image,
)


def _record(version="img:latest", base_url="http://sandbox.local:41000/fastapi"):
    return ContainerRecord(
        session_id="sess123",
        container_id="cid",
        container_name="runtime_sandbox_container_sess123",
        base_url=base_url,
        runtime_token="tok-abc",
        version=version,
    )


def test_error_payload_shape():
    payload = json.loads(error_payload("boom"))
    assert payload == {"isError": True, "content": [{"type": "text", "text": "boom"}]}


def test_requests_carry_runtime_token_and_session_header():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["session"] = request.headers["x-agentrun-session-id"]
        return httpx.Response(200)

    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(handler))

    assert client.check_health() is True
    assert seen == {"path": "/fastapi/healthz", "auth": "Bearer tok-abc", "session": "ssess123"}


def test_generic_tool_is_posted_to_tool_route():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/fastapi/tools/run_shell_command"
        assert json.loads(request.content) == {"command": "ls"}
        return httpx.Response(200, text='{"content": "ok"}')

    with SandboxHttpClient(_record(), transport=httpx.MockTransport(handler)) as client:
        assert client.call_tool("run_shell_command", {"command": "ls"}) == '{"content": "ok"}'


def test_mcp_tool_is_posted_with_name_and_arguments():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/fastapi/mcp/call_tool"
        assert json.loads(request.content) == {"tool_name": "browser_navigate", "arguments": {"url": "x"}}
        return httpx.Response(200, text="done")

    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(handler))
    assert client.call_tool("browser_navigate", {"url": "x"}) == "done"


def test_tool_http_failure_becomes_error_payload():
    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(lambda r: httpx.Response(500, text="crash")))

    payload = json.loads(client.call_tool("run_ipython_cell", {"code": "1/0"}))

    assert payload["isError"] is True
    assert "500" in payload["content"][0]["text"]


def test_tool_transport_failure_becomes_error_payload():
    def handler(request):
        raise httpx.ConnectError("refused")

    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(handler))

    assert json.loads(client.call_tool("x"))["isError"] is True
    assert client.check_health() is False
    assert client.list_tools() == {}


def test_list_tools_adds_generic_and_filters():
    def handler(request):
        return httpx.Response(200, json={"browser": {"browser_navigate": {}}})

    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(handler))

    tools = client.list_tools()
    assert set(tools) == {"browser", "generic"}
    assert set(tools["generic"]) == {"run_ipython_cell", "run_shell_command"}
    assert client.list_tools("browser") == {"browser": {"browser_navigate": {}}}
    assert client.list_tools("missing") == {"missing": {}}


def test_add_mcp_servers_posts_configs():
    def handler(request):
        assert request.url.path == "/fastapi/mcp/add_servers"
        assert json.loads(request.content) == {"server_configs": {"mcpServers": {}}, "overwrite": True}
        return httpx.Response(200, json={"added": 0})

    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(handler))
    assert client.add_mcp_servers({"mcpServers": {}}, overwrite=True) == {"added": 0}


def test_wait_until_healthy_times_out():
    client = SandboxHttpClient(_record(), transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    with pytest.raises(ToolInvocationError):
        client.wait_until_healthy(timeout=0.05, poll_interval=0.01)


def test_record_without_endpoint_is_rejected():
    with pytest.raises(ToolInvocationError) as exc:
        SandboxHttpClient(_record(base_url=None))
    assert exc.value.status_code == 502


def test_connect_selects_client_by_image():
    assert is_training_image("reg/ns/runtime-sandbox-appworld:latest") is True
    assert is_training_image("reg/ns/runtime-sandbox-browser:latest") is False
    assert is_training_image("reg/ns/sandbox-bfcl:latest") is True
    assert is_training_image(None) is False
    assert isinstance(connect(_record("reg/ns/sandbox-appworld:v1")), TrainingSandboxClient)
    assert isinstance(connect(_record("reg/ns/runtime-sandbox-base:v1")), SandboxHttpClient)


def test_training_client_strips_last_path_segment():
    def handler(request):
        assert request.url.path == "/create"
        body = json.loads(request.content)
        assert body["env_type"] == "appworld"
        assert body["task_id"] == "t1"
        return httpx.Response(200, json={"data": {"instance_id": "i1"}})

    client = TrainingSandboxClient(_record("sandbox-appworld"), transport=httpx.MockTransport(handler))

    assert client.base_url == "http://sandbox.local:41000"
    result = client.call_tool("create_instance", {"env_type": "appworld", "task_id": "t1"})
    assert json.loads(result) == {"instance_id": "i1"}


def test_training_client_release_and_unknown_tool():
    client = TrainingSandboxClient(
        _record("sandbox-bfcl"),
        transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"success": True})),
    )

    assert client.call_tool("release_instance", {"instance_id": "i1"}) == "success"
    assert "Unknown tool: dance" in json.loads(client.call_tool("dance"))["content"][0]["text"]
    assert client.add_mcp_servers({})["isError"] is True


def test_training_client_http_error_becomes_error_payload():
    client = TrainingSandboxClient(
        _record("sandbox-bfcl"),
        transport=httpx.MockTransport(lambda r: httpx.Response(500, text="down")),
    )

    payload = json.loads(client.call_tool("step", {"instance_id": "i1", "action": {"a": 1}}))

    assert payload["isError"] is True
    assert client.list_tools(instance_id="i1") == {}
    assert client.list_tools() == {}


def test_training_env_profile_sends_split():
    def handler(request):
        assert request.url.path == "/get_env_profile"
        assert json.loads(request.content)["params"] == {"split": "dev"}
        return httpx.Response(200, json={"data": ["t1", "t2"]})

    client = TrainingSandboxClient(_record("sandbox-bfcl"), transport=httpx.MockTransport(handler))
    assert json.loads(client.call_tool("get_task_ids", {"env_type": "bfcl", "split": "dev"})) == ["t1", "t2"]
