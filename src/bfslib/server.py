# BFS library - server
# Copyright (C) 2025  Clyso GmbH
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.


# pyright: reportExplicitAny=false

from __future__ import annotations

import errno
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from bfslib.config.config import Config, config_init
from bfslib.core.mgr import mgr_init, mgr_reset
from bfslib.errors import BFSError
from bfslib.logger import logger as parent_logger
from bfslib.logger import setup_logging, uvicorn_logging_config
from bfslib.routes import builds, github

logger = parent_logger.getChild("server")

API_VERSION = "1.0.0"


def _load_config() -> Config:
    try:
        return config_init()
    except BFSError as e:
        logger.error(f"unable to load config: {e}")
        sys.exit(errno.EINVAL)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Own the manager for as long as the application runs."""
    try:
        mgr = mgr_init()
    except BFSError as e:
        logger.error(f"unable to set up manager: {e}")
        sys.exit(errno.ENOTRECOVERABLE)

    logger.info(f"serving with services: {mgr.services.types()}")
    try:
        yield
    finally:
        logger.info("stopping, releasing manager")
        mgr_reset()


def _api() -> FastAPI:
    api = FastAPI(
        title="BFS API",
        description="Build farm state service",
        version=API_VERSION,
        openapi_tags=[
            {"name": "builds", "description": "Build state operations"},
            {"name": "github", "description": "GitHub App webhook"},
        ],
    )
    api.include_router(builds.router)
    api.include_router(github.router)
    return api


def factory() -> FastAPI:
    """Build the application served by uvicorn, with the API under `/api`."""
    setup_logging()
    _ = _load_config()

    app = FastAPI(docs_url=None, lifespan=lifespan)
    app.mount("/api", _api())
    return app


def main() -> None:
    config = _load_config()
    if config.server is None:
        logger.error("no 'server' section in config")
        sys.exit(errno.EINVAL)

    srv = config.server
    logger.info(f"listening on {srv.host}:{srv.port}")
    uvicorn.run(
        "bfslib.server:factory",
        factory=True,
        host=srv.host,
        port=srv.port,
        ssl_certfile=srv.cert,
        ssl_keyfile=srv.key,
        log_config=uvicorn_logging_config(),
    )
