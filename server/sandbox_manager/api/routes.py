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
API routes for the sandbox manager.

These endpoints are the remote-delegate protocol: another manager configured
with ``remote.base_url`` pointing here forwards every operation to them.
Handlers are synchronous because the orchestrator blocks on backend calls;
FastAPI runs them in its thread pool.
"""

import logging
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Request, status

from sandbox_manager.api.schema import (
    AddMcpServersRequest,
    CallToolRequest,
    CreateContainerRequest,
    DataResponse,
    ErrorResponse,
    ListToolsRequest,
    SandboxRef,
)
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.errors import SandboxError
from sandbox_manager.services.sandbox_service import SandboxService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sandbox", tags=["Sandbox"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    401: {"model": ErrorResponse, "description": "Missing or invalid API key"},
    404: {"model": ErrorResponse, "description": "Sandbox not found"},
    500: {"model": ErrorResponse, "description": "Backend failure"},
}


def get_sandbox_service(request: Request) -> SandboxService:
    """Orchestrator built at application startup."""
    return request.app.state.sandbox_service


@contextmanager
def _http_errors():
    try:
        yield
    except SandboxError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


def _require_target(ref: SandboxRef):
    target = ref.target()
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": SandboxErrorCodes.INVALID_PARAMETER,
                "message": "Either sandboxId or userId, sessionId and sandboxType are required",
            },
        )
    return target


def _require_id(ref: SandboxRef) -> str:
    if not ref.sandbox_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": SandboxErrorCodes.INVALID_PARAMETER, "message": "sandboxId is required"},
        )
    return ref.sandbox_id


@router.post("/createContainer", response_model=DataResponse, responses=_ERROR_RESPONSES)
def create_container(
    request: CreateContainerRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> DataResponse:
    """Provision the sandbox for an identity, reusing a live one."""
    with _http_errors():
        record = service.provision(
            request.identity(),
            env=request.environment,
            storage_path=request.storage_path,
            mount_dir=request.mount_dir,
            image_id=request.image_id,
            labels=request.labels or None,
        )
    return DataResponse(data=record.to_dict())


@router.post("/startSandbox", response_model=DataResponse, responses=_ERROR_RESPONSES)
def start_sandbox(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        return DataResponse(data=service.start(_require_id(ref)))


@router.post("/stopSandbox", response_model=DataResponse, responses=_ERROR_RESPONSES)
def stop_sandbox(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        return DataResponse(data=service.stop(_require_id(ref)))


@router.post("/removeSandbox", response_model=DataResponse, responses=_ERROR_RESPONSES)
def remove_sandbox(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        return DataResponse(data=service.remove(_require_id(ref)))


@router.post("/releaseSandbox", response_model=DataResponse, responses=_ERROR_RESPONSES)
def release_sandbox(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    """Stop, persist, remove and unregister a sandbox."""
    with _http_errors():
        return DataResponse(data=service.release(_require_target(ref)).to_dict())


@router.post("/closeSandbox", response_model=DataResponse, responses=_ERROR_RESPONSES)
def close_sandbox(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        return DataResponse(data=service.close(_require_target(ref)))


@router.post("/getSandboxStatus", response_model=DataResponse, responses=_ERROR_RESPONSES)
def get_sandbox_status(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        return DataResponse(data=service.get_status(_require_target(ref)))


@router.post("/getInfo", response_model=DataResponse, responses=_ERROR_RESPONSES)
def get_info(ref: SandboxRef, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        return DataResponse(data=service.get_info(_require_id(ref)).to_dict())


@router.post("/listTools", response_model=DataResponse, responses=_ERROR_RESPONSES)
def list_tools(request: ListToolsRequest, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    with _http_errors():
        tools = service.list_tools(request.sandbox_id, request.user_id, request.session_id, request.tool_type)
    return DataResponse(data=tools)


@router.post("/callTool", response_model=DataResponse, responses=_ERROR_RESPONSES)
def call_tool(request: CallToolRequest, service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    """Invoke a tool; tool failures come back as an error payload with HTTP 200."""
    result = service.call_tool(
        request.sandbox_id,
        request.user_id,
        request.session_id,
        request.tool_name,
        request.arguments,
    )
    return DataResponse(data=result)


@router.post("/addMcpServers", response_model=DataResponse, responses=_ERROR_RESPONSES)
def add_mcp_servers(
    request: AddMcpServersRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> DataResponse:
    with _http_errors():
        result = service.add_mcp_servers(
            request.sandbox_id,
            request.user_id,
            request.session_id,
            request.server_configs,
            request.overwrite,
        )
    return DataResponse(data=result)


@router.post("/cleanup", response_model=DataResponse, responses=_ERROR_RESPONSES)
def cleanup(service: SandboxService = Depends(get_sandbox_service)) -> DataResponse:
    """Release every registered sandbox; the result is the number of failures."""
    with _http_errors():
        failures = service.cleanup_all()
    return DataResponse(data=failures)
