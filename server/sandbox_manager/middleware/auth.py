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
Bearer-token authentication for the sandbox API.

When ``server.api_key`` is configured, every request outside the public
paths must send ``Authorization: Bearer <api_key>``. Without a configured
key the API is open.
"""

import hmac
import logging

from fastapi import status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sandbox_manager.config import AppConfig
from sandbox_manager.services.constants import SandboxErrorCodes

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})


def _unauthorized(code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, config: AppConfig):
        super().__init__(app)
        self.api_key = config.server.api_key

    async def dispatch(self, request, call_next):
        if not self.api_key or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if not header or scheme.lower() != "bearer" or not token.strip():
            return _unauthorized(SandboxErrorCodes.MISSING_API_KEY, "Authorization: Bearer <api key> header is required")
        if not hmac.compare_digest(token.strip().encode(), self.api_key.encode()):
            logger.warning("Rejected request to %s with an invalid API key", request.url.path)
            return _unauthorized(SandboxErrorCodes.INVALID_API_KEY, "Invalid API key")
        return await call_next(request)
