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
Configuration loading for the sandbox manager.

Settings are read from a TOML file. The path is resolved from the explicit
argument, then the ``SANDBOX_CONFIG_PATH`` environment variable, then
``~/.sandbox-manager.toml``. A missing file yields the defaults below.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from threading import Lock
from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "SANDBOX_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path.home() / ".sandbox-manager.toml"


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    api_key: Optional[str] = Field(
        None,
        description="Bearer key required on /sandbox/* routes when set",
    )


class RuntimeConfig(BaseModel):
    """Container backend selection and addressing."""

    type: Literal["docker", "kubernetes", "cloud"] = "docker"
    container_prefix: str = "runtime_sandbox_container_"
    host: str = Field("localhost", description="Host used when building sandbox URLs")
    protocol: str = "http"
    image_registry: str = "agentscope-registry.ap-southeast-1.cr.aliyuncs.com"
    image_namespace: str = "agentscope"
    image_tag: str = "latest"
    readiness_timeout: float = Field(
        60.0, ge=0, description="Seconds to wait for a new sandbox to answer /healthz; 0 skips the check"
    )


class PortRangeConfig(BaseModel):
    start: int = 49152
    end: int = 59152

    @model_validator(mode="after")
    def validate_range(self) -> "PortRangeConfig":
        if self.start <= 0 or self.end > 65535:
            raise ValueError("ports must lie within 1..65535")
        if self.start > self.end:
            raise ValueError(f"ports.start ({self.start}) must not exceed ports.end ({self.end})")
        return self


class DockerConfig(BaseModel):
    api_timeout: int = 180


class KubernetesConfig(BaseModel):
    kubeconfig_path: Optional[str] = None
    namespace: str = "default"
    ready_timeout: int = 120


class CloudConfig(BaseModel):
    """Managed cloud-session backend settings."""

    api_key: Optional[str] = None
    image_id: str = "linux_latest"


class RedisConfig(BaseModel):
    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    key_prefix: str = "sandbox"
    port_key: str = "_runtime_sandbox_container_occupied_ports"
    pool_key: str = "_runtime_sandbox_container_container_pool"
    socket_timeout: float = 5.0
    connect_timeout: float = 5.0
    max_retries: int = 3
    retry_delay: float = 1.0

    @property
    def url(self) -> str:
        auth = ""
        if self.password:
            auth = f"{self.username or ''}:{self.password}@"
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class StorageConfig(BaseModel):
    type: Literal["local", "s3"] = "local"
    storage_folder: str = ""
    mount_dir: str = "sessions_mount_dir"
    readonly_mounts: Dict[str, str] = Field(
        default_factory=dict,
        description="Host path to container path, mounted read-only into every sandbox",
    )
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: str = "us-east-1"

    @model_validator(mode="after")
    def validate_s3(self) -> "StorageConfig":
        if self.type == "s3" and not self.bucket:
            raise ValueError("storage.bucket is required when storage.type = 's3'")
        return self


class PoolConfig(BaseModel):
    size: int = Field(0, ge=0)
    kind: str = "base"


class RemoteConfig(BaseModel):
    base_url: Optional[str] = None
    bearer_token: Optional[str] = None
    timeout: float = 120.0


class AppConfig(BaseModel):
    """Root configuration object."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    ports: PortRangeConfig = Field(default_factory=PortRangeConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    cloud: CloudConfig = Field(default_factory=CloudConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)

    @property
    def remote_mode(self) -> bool:
        return bool(self.remote.base_url)

    @classmethod
    def from_file(cls, path: str) -> "AppConfig":
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
        return cls.model_validate(data)


_config: Optional[AppConfig] = None
_config_lock = Lock()


def _resolve_path(path: Optional[str]) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from TOML and cache it for ``get_config``.

    Args:
        path: Optional explicit config path

    Returns:
        AppConfig: Parsed configuration (defaults when the file is absent)
    """
    global _config
    resolved = _resolve_path(path)
    if resolved.is_file():
        config = AppConfig.from_file(str(resolved))
        logger.info("Loaded configuration from %s", resolved)
    else:
        logger.info("Config file %s not found; using defaults", resolved)
        config = AppConfig()
    with _config_lock:
        _config = config
    return config


def get_config() -> AppConfig:
    """Return the cached configuration, loading it on first use."""
    if _config is not None:
        return _config
    with _config_lock:
        if _config is not None:
            return _config
    return load_config()


__all__ = [
    "AppConfig",
    "CloudConfig",
    "DockerConfig",
    "KubernetesConfig",
    "PoolConfig",
    "PortRangeConfig",
    "RedisConfig",
    "RemoteConfig",
    "RuntimeConfig",
    "ServerConfig",
    "StorageConfig",
    "get_config",
    "load_config",
]
