# BFS library - ci - github - client
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

# pyright: reportExplicitAny=false, reportAny=false

from __future__ import annotations

import enum
from typing import Any, override

import httpx
import pydantic

from bfslib.ci.github import logger as parent_logger
from bfslib.ci.github.service_data import InstallationAccessToken
from bfslib.errors import BFSError

logger = parent_logger.getChild("client")


class GitHubError(BFSError):
    @override
    def __str__(self) -> str:
        return "GitHub error" + (f": {self.msg}" if self.msg else "")


class GitHubConnectionError(GitHubError):
    @override
    def __str__(self) -> str:
        return "GitHub connection error" + (f": {self.msg}" if self.msg else "")


class GitHubPermissionDeniedError(GitHubError):
    """Most likely due to an expired installation access token."""

    @override
    def __str__(self) -> str:
        return "GitHub permission denied" + (f": {self.msg}" if self.msg else "")


class CheckRunStatus(str, enum.Enum):
    queued = "queued"
    in_progress = "in_progress"
    completed = "completed"


class CheckRunConclusion(str, enum.Enum):
    success = "success"
    failure = "failure"
    neutral = "neutral"
    cancelled = "cancelled"
    skipped = "skipped"
    timed_out = "timed_out"
    action_required = "action_required"


class CheckRunOutput(pydantic.BaseModel):
    title: str
    summary: str


class CheckRunRequest(pydantic.BaseModel):
    name: str | None = pydantic.Field(default=None)
    head_sha: str | None = pydantic.Field(default=None)
    details_url: str | None = pydantic.Field(default=None)
    status: CheckRunStatus
    conclusion: CheckRunConclusion | None = pydantic.Field(default=None)
    output: CheckRunOutput | None = pydantic.Field(default=None)


class CheckRunResponse(pydantic.BaseModel):
    id: int
    node_id: str
    name: str
    status: CheckRunStatus
    conclusion: CheckRunConclusion | None = pydantic.Field(default=None)


class GitHubClient:
    """Minimal GitHub REST client for managing check runs."""

    _client: httpx.Client

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, ep: str, data: dict[str, Any] | None) -> Any:
        try:
            res = self._client.request(method, ep, json=data)
            _ = res.raise_for_status()
        except httpx.ConnectError as e:
            msg = f"error connecting to '{self._client.base_url}': {e}"
            logger.error(msg)
            raise GitHubConnectionError(msg) from e
        except httpx.TimeoutException as e:
            msg = f"timeout accessing '{ep}': {e}"
            logger.error(msg)
            raise GitHubConnectionError(msg) from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (
                httpx.codes.UNAUTHORIZED.value,
                httpx.codes.FORBIDDEN.value,
            ):
                msg = f"authentication error accessing '{ep}': {e}"
                logger.error(msg)
                raise GitHubPermissionDeniedError(msg) from e
            msg = f"error accessing '{ep}': {e}"
            logger.error(msg)
            raise GitHubError(msg) from e
        except httpx.HTTPError as e:
            msg = f"error accessing '{ep}': {e}"
            logger.error(msg)
            raise GitHubError(msg) from e

        try:
            return res.json()
        except ValueError as e:
            msg = f"malformed response from '{ep}': {e}"
            logger.error(msg)
            raise GitHubError(msg) from e

    def _check_run(self, raw: Any) -> CheckRunResponse:
        try:
            return CheckRunResponse.model_validate(raw)
        except pydantic.ValidationError as e:
            msg = f"unexpected check run response: {e}"
            logger.error(msg)
            raise GitHubError(msg) from e

    def create_check_run(self, repo: str, req: CheckRunRequest) -> CheckRunResponse:
        """Create a check run in the `owner/name` repository."""
        raw = self._request(
            "POST",
            f"/repos/{repo}/check-runs",
            req.model_dump(mode="json", exclude_none=True),
        )
        return self._check_run(raw)

    def update_check_run(
        self, repo: str, check_run_id: int, req: CheckRunRequest
    ) -> CheckRunResponse:
        raw = self._request(
            "PATCH",
            f"/repos/{repo}/check-runs/{check_run_id}",
            req.model_dump(mode="json", exclude_none=True),
        )
        return self._check_run(raw)

    def create_installation_access_token(
        self, installation_id: int
    ) -> InstallationAccessToken:
        """
        Obtain an access token for an app installation.

        The client must be authenticated as the app itself, with a JWT.
        """
        raw = self._request(
            "POST", f"/app/installations/{installation_id}/access_tokens", None
        )
        try:
            return InstallationAccessToken.model_validate(raw)
        except pydantic.ValidationError as e:
            msg = f"unexpected access token response: {e}"
            logger.error(msg)
            raise GitHubError(msg) from e
