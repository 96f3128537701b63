# BFS library - builds - types
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

from __future__ import annotations

import enum
from datetime import datetime as dt
from typing import override

import pydantic


class BuildState(str, enum.Enum):
    queued = "queued"
    building = "building"
    built = "built"


class ForceState(str, enum.Enum):
    #
    # a rebuild has not been requested.
    #
    unforced = "unforced"
    #
    # a rebuild was requested while building; applied once the current
    # attempt finishes.
    #
    forcing = "forcing"
    #
    # a rebuild was requested while built; applied by the next requeue pass.
    #
    forced = "forced"


class ResultStatus(str, enum.Enum):
    # declared from best to worst.
    success = "success"
    warning = "warning"
    error = "error"
    abort = "abort"
    abnormal = "abnormal"
    skip = "skip"
    interrupt = "interrupt"

    @property
    def severity(self) -> int:
        return list(ResultStatus).index(self)

    @classmethod
    def worst(cls, statuses: list[ResultStatus]) -> ResultStatus:
        """Obtain the worst of all statuses, `success` if there are none."""
        return max(statuses, key=lambda s: s.severity, default=ResultStatus.success)


class BuildID(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    tenant: str
    package_name: str
    package_version: str
    target: str
    target_config_name: str
    package_config_name: str
    toolchain_name: str
    toolchain_version: str

    @override
    def __str__(self) -> str:
        return (
            f"{self.tenant}/{self.package_name}/{self.package_version}/"
            + f"{self.target}/{self.target_config_name}/{self.package_config_name}/"
            + f"{self.toolchain_name}-{self.toolchain_version}"
        )


class OperationResult(pydantic.BaseModel):
    operation: str
    status: ResultStatus
    log: str = pydantic.Field(default="")


class BuildMachine(pydantic.BaseModel):
    name: str
    summary: str = pydantic.Field(default="")


class BuildInfo(pydantic.BaseModel):
    """Read-only snapshot of a build, detached from any transaction."""

    model_config = pydantic.ConfigDict(frozen=True)

    id: BuildID
    state: BuildState
    force: ForceState
    timestamp: dt
    completion_timestamp: dt | None = None
    status: ResultStatus | None = None
    machine: BuildMachine | None = None
    auxiliary_machines: list[BuildMachine] = pydantic.Field(default=[])
    results: list[OperationResult] = pydantic.Field(default=[])

    def as_queued(self) -> BuildInfo:
        """Obtain a copy of this build as if it were queued."""
        return self.model_copy(
            update={
                "state": BuildState.queued,
                "status": None,
                "machine": None,
                "auxiliary_machines": [],
                "results": [],
            }
        )


class BuildQueuedHints(pydantic.BaseModel):
    """Hints about the tenant's contents, for queued notifications."""

    # tenant contains a single package version.
    single_package_version: bool
    # package has a single build configuration.
    single_package_config: bool


class Toolchain(pydantic.BaseModel):
    name: str
    version: str
