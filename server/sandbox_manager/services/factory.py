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
Factories that build orchestrator collaborators from configuration.

Redis-backed variants are chosen when ``redis.enabled`` is set so that several
orchestrator processes share the registry, the port ledger and the pool queue.
"""

import logging
from typing import Optional

from sandbox_manager.config import AppConfig, get_config
from sandbox_manager.services.driver import ContainerDriver
from sandbox_manager.services.ports import LocalPortAllocator, PortAllocator, RedisPortAllocator
from sandbox_manager.services.redis_factory import get_redis_client
from sandbox_manager.services.sandbox_map import InMemorySandboxMap, RedisSandboxMap, SandboxMap

logger = logging.getLogger(__name__)


def create_driver(config: Optional[AppConfig] = None) -> ContainerDriver:
    """
    Create the container driver selected by ``runtime.type``.

    Raises:
        ValueError: If the runtime type is not supported
    """
    config = config or get_config()
    runtime_type = config.runtime.type.lower()
    if runtime_type == "docker":
        from sandbox_manager.services.docker import DockerDriver

        return DockerDriver(config=config)
    if runtime_type == "kubernetes":
        from sandbox_manager.services.k8s.kubernetes_driver import KubernetesDriver

        return KubernetesDriver(config=config)
    if runtime_type == "cloud":
        from sandbox_manager.services.cloud import CloudSessionDriver

        return CloudSessionDriver(config=config)
    raise ValueError(f"Unsupported runtime type: {config.runtime.type}")


def redis_key(config: AppConfig, name: str) -> str:
    return f"{config.redis.key_prefix.rstrip(':')}:{name}"


def create_sandbox_map(config: Optional[AppConfig] = None) -> SandboxMap:
    config = config or get_config()
    if config.redis.enabled:
        return RedisSandboxMap(get_redis_client(config.redis), prefix=config.redis.key_prefix)
    return InMemorySandboxMap()


def create_port_allocator(config: Optional[AppConfig] = None) -> PortAllocator:
    config = config or get_config()
    if config.redis.enabled:
        return RedisPortAllocator(
            get_redis_client(config.redis),
            redis_key(config, config.redis.port_key),
            config.ports.start,
            config.ports.end,
        )
    return LocalPortAllocator(config.ports.start, config.ports.end)


__all__ = ["create_driver", "create_port_allocator", "create_sandbox_map", "redis_key"]
