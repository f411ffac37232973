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
Core data model for sandbox orchestration.

A ``SandboxIdentity`` names a logical sandbox; a ``ContainerRecord`` describes
the physical resource currently backing it. Records are persisted as JSON with
camelCase keys so that every orchestrator process sharing a store reads the
same shape.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sandbox_manager.services.constants import (
    BROWSER_SESSION_ID,
    RUNTIME_TOKEN_LENGTH,
    SESSION_TOKEN_LENGTH,
)

_TOKEN_ALPHABET = string.ascii_letters + string.digits


def random_token(length: int) -> str:
    """Generate an alphanumeric token from a cryptographic source."""
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


class SandboxKind(str, Enum):
    """Registered sandbox kinds. Unknown strings are accepted as custom kinds."""

    BASE = "base"
    FILESYSTEM = "filesystem"
    BROWSER = "browser"
    BFCL = "bfcl"
    APPWORLD = "appworld"
    WEBSHOP = "webshop"
    GUI = "gui"
    MOBILE = "mobile"
    AGENTBAY = "agentbay"

    @classmethod
    def normalize(cls, value: Any) -> str:
        if isinstance(value, SandboxKind):
            return value.value
        text = str(value or "").strip().lower()
        if not text:
            raise ValueError("sandbox kind must not be empty")
        return text


@dataclass(frozen=True)
class SandboxIdentity:
    """Immutable ``(owner, session, kind)`` key of a logical sandbox."""

    owner_id: str
    session_id: str
    kind: str

    def __post_init__(self):
        object.__setattr__(self, "kind", SandboxKind.normalize(self.kind))

    def key(self) -> str:
        return f"{self.owner_id}:{self.session_id}:{self.kind}"

    def to_dict(self) -> Dict[str, str]:
        return {"userId": self.owner_id, "sessionId": self.session_id, "sandboxType": self.kind}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SandboxIdentity":
        return cls(
            owner_id=str(data.get("userId", "")),
            session_id=str(data.get("sessionId", "")),
            kind=data.get("sandboxType", ""),
        )


@dataclass
class VolumeBinding:
    host_path: str
    container_path: str
    mode: str = "rw"


@dataclass
class CreateResult:
    """What a driver reports after creating a container."""

    container_id: str
    ip: Optional[str] = None
    ports: List[int] = field(default_factory=list)
    protocol: str = "http"


# Record field name -> JSON key.
_RECORD_KEYS = {
    "session_id": "sessionId",
    "container_id": "containerId",
    "container_name": "containerName",
    "base_url": "baseUrl",
    "browser_url": "browserUrl",
    "front_browser_ws": "frontBrowserWS",
    "client_browser_ws": "clientBrowserWS",
    "artifacts_sio": "artifactsSIO",
    "ports": "ports",
    "mount_dir": "mountDir",
    "storage_path": "storagePath",
    "runtime_token": "runtimeToken",
    "version": "version",
    "kind": "sandboxType",
    "status": "status",
    "backend_info": "backendInfo",
}


@dataclass
class ContainerRecord:
    """
    Live descriptor of the resource backing a sandbox.

    ``container_name`` is the stable ``sandbox_id`` used by every later call.
    ``runtime_token`` is the credential the sandbox process was started with
    and is never regenerated for the life of the record.
    """

    session_id: str
    container_id: str
    container_name: str
    base_url: Optional[str] = None
    browser_url: Optional[str] = None
    front_browser_ws: Optional[str] = None
    client_browser_ws: Optional[str] = None
    artifacts_sio: Optional[str] = None
    ports: List[int] = field(default_factory=list)
    mount_dir: Optional[str] = None
    storage_path: Optional[str] = None
    runtime_token: Optional[str] = None
    version: Optional[str] = None
    kind: Optional[str] = None
    status: str = "running"
    backend_info: Optional[Dict[str, Any]] = None

    @property
    def sandbox_id(self) -> str:
        return self.container_name

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in _RECORD_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContainerRecord":
        kwargs = {attr: data.get(key) for attr, key in _RECORD_KEYS.items() if key in data}
        kwargs["ports"] = [int(p) for p in kwargs.get("ports") or []]
        if kwargs.get("status") is None:
            kwargs.pop("status", None)
        return cls(**kwargs)


def build_urls(protocol: str, host: str, port: Any, token: str) -> Dict[str, str]:
    """Addresses of the services exposed by a sandbox image on ``host:port``."""
    return {
        "base_url": f"{protocol}://{host}:{port}/fastapi",
        "browser_url": f"{protocol}://{host}:{port}/steel-api/{token}",
        "front_browser_ws": f"ws://{host}:{port}/steel-api/{token}/v1/sessions/cast",
        "client_browser_ws": f"ws://{host}:{port}/steel-api/{token}/&sessionId={BROWSER_SESSION_ID}",
        "artifacts_sio": f"{protocol}://{host}:{port}/v1",
    }


def new_session_token() -> str:
    return random_token(SESSION_TOKEN_LENGTH)


def new_runtime_token() -> str:
    return random_token(RUNTIME_TOKEN_LENGTH)


@dataclass
class ReleaseResult:
    """Outcome of a hard release."""

    released: bool
    storage_synced: bool = True
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"released": self.released, "storageSynced": self.storage_synced, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseResult":
        return cls(
            released=bool(data.get("released")),
            storage_synced=bool(data.get("storageSynced", True)),
            message=data.get("message"),
        )


__all__ = [
    "ContainerRecord",
    "CreateResult",
    "ReleaseResult",
    "SandboxIdentity",
    "SandboxKind",
    "VolumeBinding",
    "build_urls",
    "new_runtime_token",
    "new_session_token",
    "random_token",
]
