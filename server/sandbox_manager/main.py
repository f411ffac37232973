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
FastAPI application entry point for the sandbox manager.

This module configures logging, builds the orchestrator at startup and
exposes the ``/sandbox/*`` routes used by remote managers and clients.
"""

import copy
import logging.config
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sandbox_manager.config import load_config
from uvicorn.config import LOGGING_CONFIG as UVICORN_LOGGING_CONFIG

LOG_FORMAT = "%(levelprefix)s %(asctime)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S%z"


def build_log_config(level: str) -> Dict[str, Any]:
    """Uvicorn's logging config with timestamps and a ``sandbox_manager`` logger."""
    log_config = copy.deepcopy(UVICORN_LOGGING_CONFIG)
    for formatter in ("default", "access"):
        log_config["formatters"][formatter].update(
            fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, use_colors=True
        )
    log_config["loggers"]["sandbox_manager"] = {
        "handlers": ["default"],
        "level": level.upper(),
        "propagate": False,
    }
    return log_config


app_config = load_config()
log_config = build_log_config(app_config.server.log_level)
logging.config.dictConfig(log_config)
logging.getLogger().setLevel(getattr(logging, app_config.server.log_level.upper(), logging.INFO))

from sandbox_manager.api.routes import router  # noqa: E402
from sandbox_manager.middleware.auth import AuthMiddleware  # noqa: E402
from sandbox_manager.services.constants import SandboxErrorCodes  # noqa: E402
from sandbox_manager.services.errors import SandboxError  # noqa: E402
from sandbox_manager.services.sandbox_service import SandboxService  # noqa: E402

logger = logging.getLogger(__name__)

FALLBACK_ERROR_MESSAGE = "Sandbox manager request failed."


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = SandboxService(config=app_config)
    app.state.sandbox_service = service
    service.warm_up()
    try:
        yield
    finally:
        logger.info("Shutting down sandbox manager")
        service.shutdown(cleanup=True)


app = FastAPI(
    title="Sandbox Manager API",
    version="0.1.0",
    description="Provisions, pools and releases isolated sandboxes and routes tool calls into them.",
    lifespan=lifespan,
)
app.state.config = app_config
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(AuthMiddleware, config=app_config)
app.include_router(router)


def _error_body(detail: Any) -> Dict[str, str]:
    """Coerce an ``HTTPException`` detail into ``{"code", "message"}``."""
    if isinstance(detail, dict):
        return {
            "code": detail.get("code") or SandboxErrorCodes.UNKNOWN_ERROR,
            "message": detail.get("message") or FALLBACK_ERROR_MESSAGE,
        }
    return {
        "code": SandboxErrorCodes.UNKNOWN_ERROR,
        "message": str(detail) if detail else FALLBACK_ERROR_MESSAGE,
    }


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.detail), headers=exc.headers)


@app.exception_handler(SandboxError)
async def sandbox_error_handler(request: Request, exc: SandboxError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_detail())


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "sandbox_manager.main:app",
        host=app_config.server.host,
        port=app_config.server.port,
        log_config=log_config,
    )


if __name__ == "__main__":
    run()
