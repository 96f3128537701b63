# BFS library - ci - github - service
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
GitHub check runs service.

Mirrors each of a tenant's builds as a check run on the commit under report.
The remote is pushed to when a notification arrives, and the outcome is kept
in the tenant's service data, so that check runs whose push failed can be
retried later on.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from typing import override

import httpx

from bfslib.builds.types import BuildInfo, BuildQueuedHints, BuildState, ResultStatus
from bfslib.ci.github import logger as parent_logger
from bfslib.ci.github.client import (
    CheckRunConclusion,
    CheckRunOutput,
    CheckRunRequest,
    CheckRunStatus,
    GitHubClient,
    GitHubError,
)
from bfslib.ci.github.service_data import (
    CheckRun,
    InstallationAccessToken,
    ServiceData,
    ServiceDataError,
)
from bfslib.tenants.service import (
    BuildBuildingService,
    BuildBuiltService,
    BuildCanceledService,
    BuildQueuedService,
    ServiceReconciler,
    TenantService,
    UpdateFn,
)

logger = parent_logger.getChild("service")

SERVICE_TYPE = "ci-github"

# obtains a fresh installation access token, given the expired one's data.
TokenProvider = Callable[[ServiceData], InstallationAccessToken]

_STATE_ORDER = {
    BuildState.queued: 0,
    BuildState.building: 1,
    BuildState.built: 2,
}


class _MergeMode(enum.Enum):
    # only move check runs forward, from queued towards built.
    forward = enum.auto()
    # allow moving check runs back to queued, for rebuilds.
    regress = enum.auto()
    # only update check runs still in the same state.
    same = enum.auto()


def _status(state: BuildState) -> CheckRunStatus:
    match state:
        case BuildState.queued:
            return CheckRunStatus.queued
        case BuildState.building:
            return CheckRunStatus.in_progress
        case BuildState.built:
            return CheckRunStatus.completed


def _conclusion(status: ResultStatus, warning_success: bool) -> CheckRunConclusion:
    match status:
        case ResultStatus.success:
            return CheckRunConclusion.success
        case ResultStatus.warning:
            return (
                CheckRunConclusion.success
                if warning_success
                else CheckRunConclusion.failure
            )
        case ResultStatus.skip:
            return CheckRunConclusion.skipped
        case ResultStatus.interrupt:
            return CheckRunConclusion.cancelled
        case _:
            return CheckRunConclusion.failure


def check_run_name(build: BuildInfo, hints: BuildQueuedHints | None) -> str:
    bid = build.id
    name = (
        f"{bid.target_config_name}/{bid.target}/"
        + f"{bid.toolchain_name}-{bid.toolchain_version}"
    )
    if hints is None or not hints.single_package_config:
        name = f"{name}/{bid.package_config_name}"
    if hints is None or not hints.single_package_version:
        name = f"{bid.package_name}/{bid.package_version}/{name}"
    return name


class GitHubCIService(
    BuildQueuedService,
    BuildBuildingService,
    BuildBuiltService,
    BuildCanceledService,
    ServiceReconciler,
):
    _api_url: str
    _timeout: float
    _transport: httpx.BaseTransport | None
    _token_provider: TokenProvider | None

    def __init__(
        self,
        api_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        token_provider: TokenProvider | None = None,
    ) -> None:
        self._api_url = api_url
        self._timeout = timeout
        self._transport = transport
        self._token_provider = token_provider

    def _parse(self, service: TenantService) -> ServiceData | None:
        if service.data is None:
            logger.error(f"missing service data for '{service.id}'")
            return None
        try:
            return ServiceData.parse(service.data)
        except ServiceDataError as e:
            logger.error(f"unable to parse service data for '{service.id}': {e}")
            return None

    def _token(self, sd: ServiceData) -> InstallationAccessToken | None:
        """Obtain a valid access token, possibly refreshing it."""
        if not sd.installation_access.expired():
            return sd.installation_access

        if self._token_provider is None:
            logger.warning(
                f"installation access token for '{sd.repository_full_name}' expired"
            )
            return None

        try:
            return self._token_provider(sd)
        except Exception as e:
            logger.error(f"unable to refresh installation access token: {e}")
            return None

    def _push(
        self,
        sd: ServiceData,
        token: InstallationAccessToken | None,
        check_runs: list[CheckRun],
    ) -> list[CheckRun]:
        """Push check runs to the remote, returning them with their sync status."""
        if token is None:
            return [cr.model_copy(update={"state_synced": False}) for cr in check_runs]

        res: list[CheckRun] = []
        with GitHubClient(
            self._api_url,
            token.token,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            for cr in check_runs:
                req = CheckRunRequest(
                    name=cr.name,
                    head_sha=sd.report_sha if cr.check_run_id is None else None,
                    status=_status(cr.state),
                    conclusion=(
                        _conclusion(cr.status, sd.warning_success)
                        if cr.status is not None
                        else None
                    ),
                    output=CheckRunOutput(
                        title=cr.state.value
                        + (f": {cr.status.value}" if cr.status else ""),
                        summary=f"build '{cr.build_id}' is {cr.state.value}",
                    ),
                )
                try:
                    if cr.check_run_id is None:
                        remote = client.create_check_run(sd.repository_full_name, req)
                    else:
                        remote = client.update_check_run(
                            sd.repository_full_name, cr.check_run_id, req
                        )
                except GitHubError as e:
                    logger.warning(f"unable to push check run '{cr.name}': {e}")
                    res.append(cr.model_copy(update={"state_synced": False}))
                    continue

                res.append(
                    cr.model_copy(
                        update={
                            "check_run_id": remote.id,
                            "node_id": remote.node_id,
                            "state_synced": True,
                        }
                    )
                )
        return res

    def _merge(
        self,
        check_runs: list[CheckRun],
        mode: _MergeMode,
        token: InstallationAccessToken | None,
    ) -> UpdateFn:
        """Obtain a function merging pushed check runs into the latest state."""

        def _update(_tenant_id: str, service: TenantService) -> str | None:
            sd = self._parse(service)
            if sd is None:
                return None

            changed = False
            for cr in check_runs:
                cur = sd.find_check_run(cr.build_id)
                if cur is not None:
                    if mode == _MergeMode.same and cur.state != cr.state:
                        continue
                    if (
                        mode == _MergeMode.forward
                        and _STATE_ORDER[cur.state] > _STATE_ORDER[cr.state]
                    ):
                        logger.debug(
                            f"ignoring out of order '{cr.state.value}' for "
                            + f"check run '{cr.name}' ('{cur.state.value}')"
                        )
                        continue
                    if cur == cr:
                        continue
                    # keep the remote identity, if this push didn't obtain one.
                    if cr.check_run_id is None:
                        cr = cr.model_copy(
                            update={
                                "check_run_id": cur.check_run_id,
                                "node_id": cur.node_id,
                            }
                        )

                sd.set_check_run(cr)
                changed = True

            if token is not None and token != sd.installation_access:
                sd.installation_access = token
                changed = True

            completed = bool(sd.check_runs) and all(
                cr.state == BuildState.built for cr in sd.check_runs
            )
            if completed != sd.completed:
                sd.completed = completed
                changed = True

            return sd.serialize() if changed else None

        return _update

    def _notify(
        self,
        service: TenantService,
        builds: list[BuildInfo],
        state: BuildState,
        mode: _MergeMode,
        hints: BuildQueuedHints | None = None,
    ) -> UpdateFn | None:
        sd = self._parse(service)
        if sd is None:
            return None

        check_runs: list[CheckRun] = []
        for b in builds:
            build_id = str(b.id)
            cur = sd.find_check_run(build_id)
            if (
                cur is not None
                and mode == _MergeMode.forward
                and _STATE_ORDER[cur.state] > _STATE_ORDER[state]
            ):
                continue

            check_runs.append(
                CheckRun(
                    build_id=build_id,
                    name=cur.name if cur is not None else check_run_name(b, hints),
                    node_id=cur.node_id if cur is not None else None,
                    check_run_id=cur.check_run_id if cur is not None else None,
                    state=state,
                    state_synced=False,
                    status=b.status if state == BuildState.built else None,
                )
            )

        if not check_runs:
            return None

        token = self._token(sd)
        return self._merge(self._push(sd, token, check_runs), mode, token)

    @override
    def build_queued(
        self,
        tenant_id: str,
        service: TenantService,
        builds: list[BuildInfo],
        initial_state: BuildState | None,
        hints: BuildQueuedHints,
    ) -> UpdateFn | None:
        logger.debug(
            f"tenant '{tenant_id}': {len(builds)} builds queued "
            + f"(from '{initial_state.value if initial_state else 'new'}')"
        )
        mode = _MergeMode.forward if initial_state is None else _MergeMode.regress
        return self._notify(service, builds, BuildState.queued, mode, hints)

    @override
    def build_building(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> UpdateFn | None:
        logger.debug(f"tenant '{tenant_id}': build '{build.id}' building")
        return self._notify(service, [build], BuildState.building, _MergeMode.forward)

    @override
    def build_built(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> UpdateFn | None:
        logger.debug(f"tenant '{tenant_id}': build '{build.id}' built")
        return self._notify(service, [build], BuildState.built, _MergeMode.forward)

    @override
    def build_canceled(self, tenant_id: str, service: TenantService) -> None:
        """Complete every unfinished check run as cancelled, best effort."""
        sd = self._parse(service)
        if sd is None:
            return

        token = self._token(sd)
        if token is None:
            logger.warning(f"tenant '{tenant_id}' canceled, unable to notify remote")
            return

        with GitHubClient(
            self._api_url,
            token.token,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            for cr in sd.check_runs:
                if cr.state == BuildState.built or cr.check_run_id is None:
                    continue
                req = CheckRunRequest(
                    status=CheckRunStatus.completed,
                    conclusion=CheckRunConclusion.cancelled,
                    output=CheckRunOutput(
                        title="canceled",
                        summary="the build request has been canceled",
                    ),
                )
                try:
                    _ = client.update_check_run(
                        sd.repository_full_name, cr.check_run_id, req
                    )
                except GitHubError as e:
                    logger.warning(f"unable to cancel check run '{cr.name}': {e}")

    @override
    def reconcile(self, tenant_id: str, service: TenantService) -> UpdateFn | None:
        sd = self._parse(service)
        if sd is None:
            return None

        unsynced = sd.unsynced_check_runs()
        if not unsynced:
            return None

        logger.info(f"tenant '{tenant_id}': {len(unsynced)} unsynchronized check runs")
        token = self._token(sd)
        pushed = [cr for cr in self._push(sd, token, unsynced) if cr.state_synced]
        if not pushed and token == sd.installation_access:
            return None
        return self._merge(pushed, _MergeMode.same, token)
