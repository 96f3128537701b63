# BFS library - routes - github
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

from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from bfslib.api.responses import BaseErrorModel
from bfslib.ci.github.webhook import (
    WebhookError,
    WebhookResult,
    WebhookSignatureError,
)
from bfslib.core.mgr import BFSMgr
from bfslib.routes import logger as parent_logger
from bfslib.routes._utils import responses_builds

logger = parent_logger.getChild("github")

router = APIRouter(prefix="/github")


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


@router.post(
    "/webhook",
    responses={
        **responses_builds,
        400: {"model": BaseErrorModel, "description": "Malformed webhook request"},
        404: {"model": BaseErrorModel, "description": "GitHub webhook disabled"},
    },
)
async def github_webhook(
    request: Request,
    mgr: BFSMgr,
    content_type: Annotated[str | None, Header()] = None,
    x_github_event: Annotated[str | None, Header()] = None,
    x_hub_signature_256: Annotated[str | None, Header()] = None,
) -> WebhookResult:
    handler = mgr.github_webhook
    if handler is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="GitHub webhook disabled"
        )

    if content_type is None or not content_type.startswith("application/json"):
        raise _bad_request(f"invalid content type '{content_type}'")

    if not x_github_event:
        raise _bad_request("missing X-GitHub-Event header")

    body = await request.body()
    try:
        handler.verify(body, x_hub_signature_256)
    except WebhookSignatureError as e:
        logger.error(f"rejecting '{x_github_event}' event: {e}")
        raise _bad_request(e.msg or "invalid signature") from None

    logger.info(f"received '{x_github_event}' event")
    try:
        return await run_in_threadpool(handler.handle, x_github_event, body)
    except WebhookError as e:
        raise _bad_request(e.msg or "bad request") from None
    except Exception as e:
        logger.error(f"unexpected error handling '{x_github_event}' event: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="check logs for failure",
        ) from e
