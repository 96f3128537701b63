# BFS library - ci - github - service data
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

import datetime
import enum
import json
from datetime import datetime as dt
from typing import Any, Literal, override

import pydantic

from bfslib.builds.types import BuildState, ResultStatus
from bfslib.ci.github import logger as parent_logger
from bfslib.errors import BFSError

logger = parent_logger.getChild("service-data")

SERVICE_DATA_VERSION = 1


class ServiceDataError(BFSError):
    @override
    def __str__(self) -> str:
        return "Service data error" + (f": {self.msg}" if self.msg else "")


class ServiceDataKind(str, enum.Enum):
    #
    # checks the head commit of a branch, as pushed.
    #
    local = "local"
    #
    # checks the merge commit of a pull request, from a remote branch.
    #
    remote = "remote"


class InstallationAccessToken(pydantic.BaseModel):
    token: str
    expires_at: dt

    def expired(self, *, margin: datetime.timedelta | None = None) -> bool:
        margin = margin if margin is not None else datetime.timedelta(minutes=5)
        return dt.now(tz=datetime.UTC) + margin >= self.expires_at


class CheckRun(pydantic.BaseModel):
    """A build's check run, mirroring its remote counterpart."""

    build_id: str
    name: str
    node_id: str | None = pydantic.Field(default=None)
    # REST api id, needed to update the remote check run.
    check_run_id: int | None = pydantic.Field(default=None)
    state: BuildState
    # whether the remote has been confirmed to be in `state`.
    state_synced: bool = pydantic.Field(default=False)
    status: ResultStatus | None = pydantic.Field(default=None)

    @pydantic.model_validator(mode="after")
    def _check_status(self) -> CheckRun:
        if self.status is not None and self.state != BuildState.built:
            raise ValueError(
                f"check run '{self.build_id}' has status while '{self.state.value}'"
            )
        return self

    def state_string(self) -> str:
        return self.state.value + ("" if self.state_synced else " (unsynchronized)")


class ServiceData(pydantic.BaseModel):
    version: Literal[1] = pydantic.Field(default=1)
    kind: ServiceDataKind
    pre_check: bool = pydantic.Field(default=False)
    re_request: bool = pydantic.Field(default=False)
    warning_success: bool = pydantic.Field(default=True)

    installation_access: InstallationAccessToken
    app_id: int
    installation_id: int

    repository_node_id: str
    repository_clone_url: str
    # owner/name, as used by the REST api.
    repository_full_name: str

    pr_node_id: str | None = pydantic.Field(default=None)
    pr_number: int | None = pydantic.Field(default=None)

    check_sha: str
    report_sha: str

    check_runs: list[CheckRun] = pydantic.Field(default=[])
    completed: bool = pydantic.Field(default=False)
    conclusion_node_id: str | None = pydantic.Field(default=None)

    @pydantic.model_validator(mode="before")
    @classmethod
    def _check_version(cls, data: Any) -> Any:
        if isinstance(data, dict) and "version" in data:
            version = data["version"]
            if version != SERVICE_DATA_VERSION:
                raise ValueError(f"unsupported service data version '{version}'")
        return data

    @pydantic.model_validator(mode="after")
    def _check_unique_builds(self) -> ServiceData:
        seen: set[str] = set()
        for cr in self.check_runs:
            if cr.build_id in seen:
                raise ValueError(f"duplicate check run for build '{cr.build_id}'")
            seen.add(cr.build_id)
        return self

    @classmethod
    def parse(cls, raw: str) -> ServiceData:
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            msg = f"malformed service data: {e}"
            logger.error(msg)
            raise ServiceDataError(msg) from e

        if not isinstance(obj, dict) or "version" not in obj:
            msg = "malformed service data: missing version"
            logger.error(msg)
            raise ServiceDataError(msg)

        try:
            return ServiceData.model_validate(obj)
        except pydantic.ValidationError as e:
            msg = f"invalid service data: {e}"
            logger.error(msg)
            raise ServiceDataError(msg) from e

    def serialize(self) -> str:
        return self.model_dump_json()

    def find_check_run(self, build_id: str) -> CheckRun | None:
        return next((cr for cr in self.check_runs if cr.build_id == build_id), None)

    def set_check_run(self, check_run: CheckRun) -> None:
        """Add or replace the check run for its build."""
        for i, cr in enumerate(self.check_runs):
            if cr.build_id == check_run.build_id:
                self.check_runs[i] = check_run
                return
        self.check_runs.append(check_run)

    def unsynced_check_runs(self) -> list[CheckRun]:
        return [cr for cr in self.check_runs if not cr.state_synced]
