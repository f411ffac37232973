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

import pytest

from sandbox_manager.config import RuntimeConfig
from sandbox_manager.services import registry
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.errors import ProvisioningError
from sandbox_manager.services.helpers import parse_bool, parse_memory_limit, parse_nano_cpus
from sandbox_manager.services.models import (
    ContainerRecord,
    ReleaseResult,
    SandboxIdentity,
    SandboxKind,
    build_urls,
    new_runtime_token,
    new_session_token,
)


def test_identity_equality_is_structural():
    a = SandboxIdentity("user1", "sess1", "BASE")
    b = SandboxIdentity("user1", "sess1", SandboxKind.BASE)
    assert a == b
    assert hash(a) == hash(b)
    assert a.key() == "user1:sess1:base"
    assert {a: 1}[b] == 1


def test_identity_accepts_custom_kind_but_not_empty():
    assert SandboxIdentity("u", "s", "my-custom").kind == "my-custom"
    with pytest.raises(ValueError):
        SandboxIdentity("u", "s", "  ")


def test_identity_dict_round_trip():
    identity = SandboxIdentity("u", "s", "browser")
    assert identity.to_dict() == {"userId": "u", "sessionId": "s", "sandboxType": "browser"}
    assert SandboxIdentity.from_dict(identity.to_dict()) == identity


def test_record_serializes_with_camel_case_keys():
    record = ContainerRecord(
        session_id="abc",
        container_id="cid",
        container_name="runtime_sandbox_container_abc",
        base_url="http://h:1/fastapi",
        ports=[41000],
        runtime_token="t" * 32,
        version="img:latest",
        kind="base",
    )
    data = record.to_dict()
    assert data["containerName"] == "runtime_sandbox_container_abc"
    assert data["baseUrl"] == "http://h:1/fastapi"
    assert data["runtimeToken"] == "t" * 32
    assert data["sandboxType"] == "base"
    assert data["backendInfo"] is None

    data["ports"] = ["41000"]
    restored = ContainerRecord.from_dict(data)
    assert restored.ports == [41000]
    assert restored.sandbox_id == "runtime_sandbox_container_abc"
    assert restored.status == "running"


def test_build_urls_embed_runtime_token():
    urls = build_urls("http", "10.0.0.5", 41000, "tok")
    assert urls["base_url"] == "http://10.0.0.5:41000/fastapi"
    assert urls["browser_url"] == "http://10.0.0.5:41000/steel-api/tok"
    assert urls["front_browser_ws"] == "ws://10.0.0.5:41000/steel-api/tok/v1/sessions/cast"
    assert urls["client_browser_ws"].startswith("ws://10.0.0.5:41000/steel-api/tok/&sessionId=")
    assert urls["artifacts_sio"] == "http://10.0.0.5:41000/v1"


def test_tokens_have_expected_length_and_alphabet():
    session = new_session_token()
    runtime = new_runtime_token()
    assert len(session) == 22 and session.isalnum()
    assert len(runtime) == 32 and runtime.isalnum()
    assert new_runtime_token() != runtime


def test_release_result_round_trip():
    result = ReleaseResult(released=True, storage_synced=False, message="lost")
    assert ReleaseResult.from_dict(result.to_dict()) == result


def test_registry_has_default_kinds():
    kinds = registry.list_kinds()
    for kind in ("base", "filesystem", "browser", "bfcl", "appworld", "webshop", "gui", "mobile", "agentbay"):
        assert kind in kinds
    assert registry.timeout("base") == 30
    assert registry.runtime_config("gui") == {"shm_size": "8.06gb"}
    assert registry.runtime_config("mobile") == {"privileged": True}


def test_resolve_image_uses_template_for_unregistered_kind():
    runtime = RuntimeConfig(image_registry="reg.example.com", image_namespace="ns", image_tag="v1")
    assert registry.resolve_image("browser", runtime) == "reg.example.com/ns/runtime-sandbox-browser:v1"
    assert registry.resolve_image("unknown-kind", runtime) == "reg.example.com/ns/runtime-sandbox-unknown-kind:v1"
    assert registry.resolve_image("agentbay", runtime) == "agentbay-cloud"


def test_merge_environment_overrides_key_by_key():
    registry.register(
        registry.SandboxConfig("env-test", environment={"A": "1", "B": "2"}, description="test kind")
    )
    merged = registry.merge_environment("env-test", {"B": "override", "C": "3"})
    assert merged == {"A": "1", "B": "override", "C": "3"}
    assert registry.merge_environment("env-test") == {"A": "1", "B": "2"}


def test_merge_environment_rejects_missing_values():
    registry.register(registry.SandboxConfig("needs-key", environment={"API_KEY": None}))
    with pytest.raises(ProvisioningError) as exc:
        registry.merge_environment("needs-key")
    assert exc.value.code == SandboxErrorCodes.INVALID_ENVIRONMENT
    assert "API_KEY" in exc.value.message
    assert registry.merge_environment("needs-key", {"API_KEY": "k"}) == {"API_KEY": "k"}


def test_parse_memory_limit_handles_units():
    assert parse_memory_limit("512Mi") == 512 * 1024 * 1024
    assert parse_memory_limit("1G") == 1_000_000_000
    assert parse_memory_limit("2gi") == 2 * 1024 ** 3
    assert parse_memory_limit("1.5gb") == 1_500_000_000
    assert parse_memory_limit("invalid") is None


def test_parse_nano_cpus():
    assert parse_nano_cpus("500m") == 500_000_000
    assert parse_nano_cpus("2") == 2_000_000_000
    assert parse_nano_cpus("bad") is None


def test_parse_bool():
    assert parse_bool(True) is True
    assert parse_bool("yes") is True
    assert parse_bool("0") is False
