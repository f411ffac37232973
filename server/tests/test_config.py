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
from pydantic import ValidationError

from sandbox_manager import config as config_module
from sandbox_manager.config import (
    AppConfig,
    PortRangeConfig,
    RedisConfig,
    StorageConfig,
    load_config,
)


def test_test_config_file_is_parsed(app_config):
    assert app_config.server.api_key == "test-api-key-12345"
    assert app_config.runtime.type == "docker"
    assert app_config.runtime.host == "127.0.0.1"
    assert app_config.runtime.readiness_timeout == 0
    assert app_config.ports.start == 41000
    assert app_config.ports.end == 41050
    assert app_config.redis.key_prefix == "sandbox-test"
    assert app_config.remote_mode is False


def test_defaults_match_runtime_conventions():
    cfg = AppConfig()
    assert cfg.runtime.container_prefix == "runtime_sandbox_container_"
    assert cfg.ports.start == 49152
    assert cfg.ports.end == 59152
    assert cfg.storage.mount_dir == "sessions_mount_dir"
    assert cfg.redis.port_key == "_runtime_sandbox_container_occupied_ports"
    assert cfg.redis.pool_key == "_runtime_sandbox_container_container_pool"
    assert cfg.pool.size == 0
    assert cfg.runtime.readiness_timeout == 60.0


def test_load_config_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    cfg = load_config(str(tmp_path / "absent.toml"))
    assert cfg == AppConfig()


def test_load_config_reads_env_path(tmp_path, monkeypatch):
    path = tmp_path / "cfg.toml"
    path.write_text('[runtime]\ntype = "kubernetes"\n[remote]\nbase_url = "http://central:8000"\n')
    monkeypatch.setenv("SANDBOX_CONFIG_PATH", str(path))
    monkeypatch.setattr(config_module, "_config", None)

    cfg = config_module.get_config()

    assert cfg.runtime.type == "kubernetes"
    assert cfg.remote_mode is True


def test_port_range_must_not_be_inverted():
    with pytest.raises(ValidationError) as exc:
        PortRangeConfig(start=5000, end=4000)
    assert "must not exceed" in str(exc.value)


def test_s3_storage_requires_bucket():
    with pytest.raises(ValidationError):
        StorageConfig(type="s3")
    assert StorageConfig(type="s3", bucket="workspaces").bucket == "workspaces"


def test_unknown_runtime_type_rejected():
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"runtime": {"type": "podman"}})


def test_redis_url_includes_credentials():
    assert RedisConfig().url == "redis://localhost:6379/0"
    assert RedisConfig(password="pw", username="u", db=2).url == "redis://u:pw@localhost:6379/2"
