# BFS library - routes - builds
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


from fastapi import APIRouter, HTTPException, status

from bfslib.api.requests import ForceRequest
from bfslib.api.responses import BaseErrorModel, ForceResponse, RebuildResponse
from bfslib.builds.mgr import ForceConflictError, InvalidForceRequestError
from bfslib.builds.types import BuildID, BuildInfo, BuildState
from bfslib.config.config import BFSConfig
from bfslib.errors import ExpiredBuildError
from bfslib.routes import logger as parent_logger
from bfslib.routes._utils import BFSBuildsMgr, responses_builds

logger = parent_logger.getChild("builds")

router = APIRouter(prefix="/builds")


def _internal_error(e: Exception) -> HTTPException:
    logger.error(f"unexpected error: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="check logs for failure",
    )


@router.post(
    "/force",
    responses={
        **responses_builds,
        400: {"model": BaseErrorModel, "description": "Malformed rebuild request"},
        404: {
            "model": BaseErrorModel,
            "description": "Package build configuration expired",
        },
        409: {
            "model": BaseErrorModel,
            "description": "Build is queued and can't be forced",
        },
    },
)
def builds_force(
    mgr: BFSBuildsMgr,
    config: BFSConfig,
    req: ForceRequest,
) -> ForceResponse:
    logger.info(f"force rebuild of '{req.build_id}'")

    try:
        force = mgr.force(req.build_id, req.reason)
    except InvalidForceRequestError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=e.msg or "bad request"
        ) from None
    except ExpiredBuildError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=e.msg or "not found"
        ) from None
    except ForceConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=e.msg or "conflict"
        ) from None
    except Exception as e:
        raise _internal_error(e) from e

    return ForceResponse(force=force, timeout=config.build.forced_rebuild_timeout)


@router.post("/rebuild", responses={**responses_builds})
def builds_rebuild(mgr: BFSBuildsMgr, build_id: BuildID) -> RebuildResponse:
    logger.info(f"rebuild '{build_id}'")

    try:
        state = mgr.rebuild(build_id)
    except Exception as e:
        raise _internal_error(e) from e

    return RebuildResponse(state=state)


@router.get("/status", responses={**responses_builds})
def builds_status(
    mgr: BFSBuildsMgr,
    tenant: str | None = None,
    state: BuildState | None = None,
) -> list[BuildInfo]:
    logger.debug(
        "obtain builds status" + (f" for tenant '{tenant}'" if tenant else "")
    )
    try:
        return mgr.list(tenant_id=tenant, state=state)
    except Exception as e:
        raise _internal_error(e) from e
