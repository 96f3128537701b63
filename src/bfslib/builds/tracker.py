# BFS library - builds - tracker
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

"""
Build state transitions.

A build is created `queued`, is claimed by a worker and becomes `building`,
and becomes `built` once the worker reports its results. A `built` build goes
back to `queued` when a rebuild is forced, and a `building` build goes back to
`queued` when interrupted.

Forcing a rebuild does not change the build's state, only its force flag:
`forcing` while building, applied once the current attempt finishes, and
`forced` while built, applied by the next requeue pass.

These functions operate on builds loaded within a transaction, and the caller
is responsible for committing.
"""

from datetime import datetime as dt
from typing import override

from bfslib.builds import logger as parent_logger
from bfslib.builds.types import (
    BuildMachine,
    BuildState,
    ForceState,
    OperationResult,
    ResultStatus,
)
from bfslib.db.models import Build
from bfslib.errors import BFSError

logger = parent_logger.getChild("tracker")


class InvalidTransitionError(BFSError):
    @override
    def __str__(self) -> str:
        return "Invalid build transition" + (f": {self.msg}" if self.msg else "")


def _check_state(build: Build, expected: BuildState, op: str) -> None:
    if build.state != expected:
        msg = (
            f"unable to {op} build '{build.build_id}': "
            + f"state is '{build.state.value}', expected '{expected.value}'"
        )
        logger.info(msg)
        raise InvalidTransitionError(msg)


def _reset_to_queued(build: Build, now: dt) -> None:
    build.state = BuildState.queued
    build.force = ForceState.unforced
    build.timestamp = now
    build.status = None
    build.machine = None
    build.auxiliary_machines = []
    build.results = []


def start_building(
    build: Build,
    machine: BuildMachine,
    auxiliary_machines: list[BuildMachine],
    now: dt,
) -> None:
    """A worker claimed the build."""
    _check_state(build, BuildState.queued, "start")
    build.state = BuildState.building
    build.timestamp = now
    build.machine = machine
    build.auxiliary_machines = auxiliary_machines
    build.status = None
    build.results = []


def report_progress(build: Build, results: list[OperationResult]) -> None:
    """Record partial results for an on-going build."""
    _check_state(build, BuildState.building, "report progress for")
    build.results = results
    build.status = ResultStatus.worst([r.status for r in results]) if results else None


def complete(build: Build, results: list[OperationResult], now: dt) -> BuildState:
    """
    A worker finished the build.

    If a rebuild was requested meanwhile, the build is queued again and its
    results discarded. Returns the build's new state.
    """
    _check_state(build, BuildState.building, "complete")

    if build.force == ForceState.forcing:
        logger.info(f"build '{build.build_id}' finished while forcing, requeue")
        _reset_to_queued(build, now)
        return build.state

    build.state = BuildState.built
    build.timestamp = now
    build.completion_timestamp = now
    build.results = results
    build.status = ResultStatus.worst([r.status for r in results])
    return build.state


def interrupt(build: Build, now: dt) -> None:
    """Put a building build back in the queue, e.g. for a higher priority one."""
    _check_state(build, BuildState.building, "interrupt")
    _reset_to_queued(build, now)


def requeue(build: Build, now: dt) -> None:
    """Queue a built build again, on a forced or a periodic rebuild."""
    _check_state(build, BuildState.built, "requeue")
    _reset_to_queued(build, now)


def request_force(build: Build) -> bool:
    """
    Request a rebuild.

    Only writes the force flag if it changes. Returns whether it did.
    """
    match build.state:
        case BuildState.building:
            target = ForceState.forcing
        case BuildState.built:
            target = ForceState.forced
        case _:
            msg = f"unable to force build '{build.build_id}': state is queued"
            logger.info(msg)
            raise InvalidTransitionError(msg)

    if build.force == target:
        return False

    build.force = target
    return True
