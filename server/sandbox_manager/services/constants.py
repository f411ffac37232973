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

"""Shared constants for sandbox services."""

# Container-side port exposed by every sandbox image.
CONTAINER_PORT = "80/tcp"
WORKSPACE_DIR = "/workspace"

# Fixed browser session used by the in-sandbox steel service.
BROWSER_SESSION_ID = "123e4567-e89b-12d3-a456-426614174000"

SESSION_TOKEN_LENGTH = 22
RUNTIME_TOKEN_LENGTH = 32

STATUS_NOT_FOUND = "not_found"
STATUS_RUNNING = "running"
STATUS_UNKNOWN = "unknown"
# Backend states that still allow reuse of a registered sandbox.
REUSABLE_STATUSES = frozenset({"running", "created", "partiallyready", "pending", "starting"})


class SandboxErrorCodes:
    """Canonical error codes for sandbox service operations."""

    # Docker runtime error codes
    DOCKER_INITIALIZATION_ERROR = "DOCKER::INITIALIZATION_ERROR"
    IMAGE_PULL_FAILED = "DOCKER::SANDBOX_IMAGE_PULL_FAILED"
    CONTAINER_CREATE_FAILED = "DOCKER::SANDBOX_CREATE_FAILED"
    CONTAINER_START_FAILED = "DOCKER::SANDBOX_START_FAILED"
    CONTAINER_STOP_FAILED = "DOCKER::SANDBOX_STOP_FAILED"
    SANDBOX_DELETE_FAILED = "DOCKER::SANDBOX_DELETE_FAILED"
    CONTAINER_QUERY_FAILED = "DOCKER::SANDBOX_QUERY_FAILED"

    # Kubernetes runtime error codes
    K8S_INITIALIZATION_ERROR = "KUBERNETES::INITIALIZATION_ERROR"
    K8S_API_ERROR = "KUBERNETES::API_ERROR"
    K8S_POD_FAILED = "KUBERNETES::POD_FAILED"
    K8S_POD_READY_TIMEOUT = "KUBERNETES::POD_READY_TIMEOUT"

    # Managed cloud session error codes
    CLOUD_INITIALIZATION_ERROR = "CLOUD::INITIALIZATION_ERROR"
    CLOUD_SESSION_FAILED = "CLOUD::SESSION_FAILED"

    # Remote delegate error codes
    REMOTE_REQUEST_FAILED = "REMOTE::REQUEST_FAILED"

    # Common error codes
    UNKNOWN_ERROR = "SANDBOX::UNKNOWN_ERROR"
    SANDBOX_NOT_FOUND = "SANDBOX::NOT_FOUND"
    SANDBOX_CLOSED = "SANDBOX::CLOSED"
    PORT_EXHAUSTED = "SANDBOX::PORT_EXHAUSTED"
    INVALID_PARAMETER = "SANDBOX::INVALID_PARAMETER"
    INVALID_ENVIRONMENT = "SANDBOX::INVALID_ENVIRONMENT"
    API_NOT_SUPPORTED = "SANDBOX::API_NOT_SUPPORTED"
    STORAGE_SYNC_FAILED = "SANDBOX::STORAGE_SYNC_FAILED"
    TOOL_INVOCATION_FAILED = "SANDBOX::TOOL_INVOCATION_FAILED"
    REGISTRY_INCONSISTENT = "SANDBOX::REGISTRY_INCONSISTENT"
    MISSING_API_KEY = "SANDBOX::MISSING_API_KEY"
    INVALID_API_KEY = "SANDBOX::INVALID_API_KEY"


__all__ = [
    "BROWSER_SESSION_ID",
    "CONTAINER_PORT",
    "REUSABLE_STATUSES",
    "RUNTIME_TOKEN_LENGTH",
    "SESSION_TOKEN_LENGTH",
    "STATUS_NOT_FOUND",
    "STATUS_RUNNING",
    "STATUS_UNKNOWN",
    "WORKSPACE_DIR",
    "SandboxErrorCodes",
]
