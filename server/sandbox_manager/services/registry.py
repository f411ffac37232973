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
Static registry of sandbox kinds.

Each kind maps to a default image, a security level, an advisory timeout,
default environment variables and backend runtime options. The table is
populated at import time and may be extended with ``register``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional

from sandbox_manager.config import RuntimeConfig
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.errors import ProvisioningError
from sandbox_manager.services.models import SandboxKind

logger = logging.getLogger(__name__)


@dataclass
class SandboxConfig:
    kind: str
    image: Optional[str] = None
    security_level: str = "medium"
    timeout: int = 60
    environment: Dict[str, Optional[str]] = field(default_factory=dict)
    runtime_config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""


_registry: Dict[str, SandboxConfig] = {}
_lock = Lock()


def register(config: SandboxConfig) -> None:
    kind = SandboxKind.normalize(config.kind)
    config.kind = kind
    with _lock:
        if kind in _registry:
            logger.info("Overriding registered sandbox kind %s", kind)
        _registry[kind] = config


def get(kind: str) -> Optional[SandboxConfig]:
    with _lock:
        return _registry.get(SandboxKind.normalize(kind))


def list_kinds() -> List[str]:
    with _lock:
        return sorted(_registry)


def default_image(kind: str, runtime: RuntimeConfig) -> str:
    return (
        f"{runtime.image_registry}/{runtime.image_namespace}/"
        f"runtime-sandbox-{SandboxKind.normalize(kind)}:{runtime.image_tag}"
    )


def resolve_image(kind: str, runtime: RuntimeConfig) -> str:
    """Registered image for ``kind``; unregistered custom kinds use the image template."""
    config = get(kind)
    if config and config.image:
        return config.image
    return default_image(kind, runtime)


def merge_environment(
    kind: str,
    overrides: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, str]:
    """
    Merge the registered environment of ``kind`` with request overrides.

    Overrides replace defaults key by key. A key whose merged value is
    ``None`` cannot be passed to a container and fails provisioning.
    """
    config = get(kind)
    merged: Dict[str, Optional[str]] = dict(config.environment) if config else {}
    merged.update(overrides or {})
    missing = sorted(key for key, value in merged.items() if value is None)
    if missing:
        raise ProvisioningError(
            f"Environment variables without value for sandbox kind {kind}: {', '.join(missing)}",
            code=SandboxErrorCodes.INVALID_ENVIRONMENT,
            status_code=400,
        )
    return {key: str(value) for key, value in merged.items()}


def runtime_config(kind: str) -> Dict[str, Any]:
    config = get(kind)
    return dict(config.runtime_config) if config else {}


def timeout(kind: str, default: int = 60) -> int:
    config = get(kind)
    return config.timeout if config else default


def _register_defaults() -> None:
    for config in (
        SandboxConfig(SandboxKind.BASE.value, security_level="medium", timeout=30,
                      description="Base sandbox with python and shell tools"),
        SandboxConfig(SandboxKind.FILESYSTEM.value, timeout=60, description="Filesystem sandbox"),
        SandboxConfig(SandboxKind.BROWSER.value, timeout=60, description="Browser sandbox"),
        SandboxConfig(SandboxKind.BFCL.value, description="BFCL training sandbox"),
        SandboxConfig(SandboxKind.APPWORLD.value, description="AppWorld training sandbox"),
        SandboxConfig(SandboxKind.WEBSHOP.value, runtime_config={"shm_size": "5.06gb"},
                      description="WebShop training sandbox"),
        SandboxConfig(SandboxKind.GUI.value, runtime_config={"shm_size": "8.06gb"},
                      description="Desktop GUI sandbox"),
        SandboxConfig(SandboxKind.MOBILE.value, runtime_config={"privileged": True},
                      description="Android emulator sandbox"),
        SandboxConfig(SandboxKind.AGENTBAY.value, image="agentbay-cloud",
                      description="Managed cloud session"),
    ):
        register(config)


_register_defaults()
