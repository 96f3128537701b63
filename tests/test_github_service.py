# BFS - tests - github check runs service
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

import datetime
import itertools
import json
from datetime import datetime as dt
from typing import Any

import httpx
import pytest
from test_service_data import RAW

from bfslib.builds.types import (
    BuildID,
    BuildInfo,
    BuildQueuedHints,
    BuildState,
    ForceState,
    ResultStatus,
)
from bfslib.ci.github.service import GitHubCIService, check_run_name
from bfslib.ci.github.service_data import InstallationAccessToken, ServiceData
from bfslib.tenants.service import TenantService, UpdateFn

API_URL = "https://github.test"

HINTS = BuildQueuedHints(single_package_version=True, single_package_config=True)


class _Remote:
    """Fake GitHub check runs endpoint."""

    requests: list[tuple[str, str, dict[str, Any]]]
    fail: bool

    def __init__(self) -> None:
        self.requests = []
        self.fail = False
        self._ids = itertools.count(100)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body: dict[str, Any] = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, request.url.path, body))
        assert request.headers["Authorization"] == "Bearer ghs_123"

        if self.fail:
            return httpx.Response(502, json={"message": "bad gateway"})

        if request.method == "POST":
            cr_id = next(self._ids)
        else:
            cr_id = int(request.url.path.rsplit("/", maxsplit=1)[1])

        return httpx.Response(
            201 if request.method == "POST" else 200,
            json={
                "id": cr_id,
                "node_id": f"CR_{cr_id}",
                "name": body.get("name", "check"),
                "status": body["status"],
                "conclusion": body.get("conclusion"),
            },
        )


@pytest.fixture
def remote() -> _Remote:
    return _Remote()


@pytest.fixture
def github(remote: _Remote) -> GitHubCIService:
    return GitHubCIService(API_URL, transport=httpx.MockTransport(remote))


def _data(**kwargs: Any) -> str:
    raw = {**RAW, "check_runs": [], **kwargs}
    return json.dumps(raw)


def _service(data: str) -> TenantService:
    return TenantService(type="ci-github", id="example/libfoo#42", data=data)


def _build(
    config: str = "linux-gcc",
    state: BuildState = BuildState.queued,
    status: ResultStatus | None = None,
) -> BuildInfo:
    return BuildInfo(
        id=BuildID(
            tenant="t1",
            package_name="libfoo",
            package_version="1.0",
            target="x86_64-linux-gnu",
            target_config_name=config,
            package_config_name="default",
            toolchain_name="public",
            toolchain_version="1.0",
        ),
        state=state,
        force=ForceState.unforced,
        timestamp=dt.now(tz=datetime.UTC),
        status=status,
    )


def _apply(fn: UpdateFn | None, data: str) -> ServiceData:
    assert fn is not None
    res = fn("t1", _service(data))
    assert res is not None
    return ServiceData.parse(res)


def test_check_run_name() -> None:
    build = _build()
    assert check_run_name(build, HINTS) == "linux-gcc/x86_64-linux-gnu/public-1.0"
    assert check_run_name(build, None) == (
        "libfoo/1.0/linux-gcc/x86_64-linux-gnu/public-1.0/default"
    )


def test_queued_creates_check_runs(github: GitHubCIService, remote: _Remote) -> None:
    data = _data()
    builds = [_build("linux-gcc"), _build("linux-clang")]

    fn = github.build_queued("t1", _service(data), builds, None, HINTS)
    assert [(m, p) for m, p, _ in remote.requests] == [
        ("POST", "/repos/example/libfoo/check-runs"),
        ("POST", "/repos/example/libfoo/check-runs"),
    ]
    _, _, body = remote.requests[0]
    assert body["head_sha"] == "bbbb"
    assert body["status"] == "queued"
    assert body["name"] == "linux-gcc/x86_64-linux-gnu/public-1.0"

    sd = _apply(fn, data)
    assert [cr.check_run_id for cr in sd.check_runs] == [100, 101]
    assert all(cr.state == BuildState.queued for cr in sd.check_runs)
    assert all(cr.state_synced for cr in sd.check_runs)
    assert not sd.completed


def test_update_is_idempotent(github: GitHubCIService) -> None:
    data = _data()
    fn = github.build_queued("t1", _service(data), [_build()], None, HINTS)
    assert fn is not None

    first = fn("t1", _service(data))
    assert first is not None
    assert fn("t1", _service(data)) == first
    # nothing left to change.
    assert fn("t1", _service(first)) is None


def test_building_then_built(github: GitHubCIService, remote: _Remote) -> None:
    data = _data()
    data = _apply(
        github.build_queued("t1", _service(data), [_build()], None, HINTS), data
    ).serialize()

    data = _apply(
        github.build_building("t1", _service(data), _build(state=BuildState.building)),
        data,
    ).serialize()
    method, path, body = remote.requests[-1]
    assert (method, path) == ("PATCH", "/repos/example/libfoo/check-runs/100")
    assert body["status"] == "in_progress"

    built = _build(state=BuildState.built, status=ResultStatus.success)
    sd = _apply(github.build_built("t1", _service(data), built), data)
    _, _, body = remote.requests[-1]
    assert body["status"] == "completed"
    assert body["conclusion"] == "success"

    cr = sd.check_runs[0]
    assert cr.state == BuildState.built
    assert cr.status == ResultStatus.success
    assert cr.state_synced
    assert sd.completed


@pytest.mark.parametrize(
    ("status", "warning_success", "conclusion"),
    [
        (ResultStatus.success, True, "success"),
        (ResultStatus.warning, True, "success"),
        (ResultStatus.warning, False, "failure"),
        (ResultStatus.error, True, "failure"),
        (ResultStatus.abort, True, "failure"),
        (ResultStatus.abnormal, True, "failure"),
        (ResultStatus.skip, True, "skipped"),
        (ResultStatus.interrupt, True, "cancelled"),
    ],
)
def test_built_conclusion(
    github: GitHubCIService,
    remote: _Remote,
    status: ResultStatus,
    warning_success: bool,
    conclusion: str,
) -> None:
    data = _data(warning_success=warning_success)
    built = _build(state=BuildState.built, status=status)
    _ = github.build_built("t1", _service(data), built)
    _, _, body = remote.requests[-1]
    assert body["conclusion"] == conclusion


def test_out_of_order_notification(github: GitHubCIService, remote: _Remote) -> None:
    data = _data()
    built = _build(state=BuildState.built, status=ResultStatus.success)
    data = _apply(github.build_built("t1", _service(data), built), data).serialize()
    n = len(remote.requests)

    building = _build(state=BuildState.building)
    assert github.build_building("t1", _service(data), building) is None
    assert len(remote.requests) == n


def test_rebuild_moves_back_to_queued(github: GitHubCIService) -> None:
    data = _data()
    built = _build(state=BuildState.built, status=ResultStatus.error)
    data = _apply(github.build_built("t1", _service(data), built), data).serialize()

    fn = github.build_queued(
        "t1", _service(data), [_build()], BuildState.built, HINTS
    )
    sd = _apply(fn, data)
    cr = sd.check_runs[0]
    assert cr.state == BuildState.queued
    assert cr.status is None
    assert cr.check_run_id == 100
    assert not sd.completed


def test_failed_push_is_reconciled(github: GitHubCIService, remote: _Remote) -> None:
    data = _data()
    remote.fail = True
    fn = github.build_queued("t1", _service(data), [_build()], None, HINTS)
    sd = _apply(fn, data)
    assert not sd.check_runs[0].state_synced
    assert sd.check_runs[0].check_run_id is None
    data = sd.serialize()

    remote.fail = False
    sd = _apply(github.reconcile("t1", _service(data)), data)
    assert sd.check_runs[0].state_synced
    assert sd.check_runs[0].check_run_id == 100

    # nothing left to reconcile.
    assert github.reconcile("t1", _service(sd.serialize())) is None


def test_expired_token(remote: _Remote) -> None:
    data = _data(
        installation_access={"token": "old", "expires_at": "2000-01-01T00:00:00Z"}
    )
    github = GitHubCIService(API_URL, transport=httpx.MockTransport(remote))
    fn = github.build_queued("t1", _service(data), [_build()], None, HINTS)
    sd = _apply(fn, data)
    assert remote.requests == []
    assert not sd.check_runs[0].state_synced

    def _refresh(_sd: ServiceData) -> InstallationAccessToken:
        return InstallationAccessToken(
            token="ghs_123",
            expires_at=dt.now(tz=datetime.UTC) + datetime.timedelta(hours=1),
        )

    github = GitHubCIService(
        API_URL, transport=httpx.MockTransport(remote), token_provider=_refresh
    )
    data = sd.serialize()
    sd = _apply(github.reconcile("t1", _service(data)), data)
    assert sd.check_runs[0].state_synced
    assert sd.installation_access.token == "ghs_123"


def test_canceled(github: GitHubCIService, remote: _Remote) -> None:
    data = _data()
    builds = [_build("linux-gcc"), _build("linux-clang")]
    data = _apply(
        github.build_queued("t1", _service(data), builds, None, HINTS), data
    ).serialize()
    built = _build("linux-gcc", state=BuildState.built, status=ResultStatus.success)
    data = _apply(github.build_built("t1", _service(data), built), data).serialize()
    n = len(remote.requests)

    github.build_canceled("t1", _service(data))
    assert len(remote.requests) == n + 1
    method, path, body = remote.requests[-1]
    assert (method, path) == ("PATCH", "/repos/example/libfoo/check-runs/101")
    assert body["conclusion"] == "cancelled"


def test_malformed_service_data(github: GitHubCIService, remote: _Remote) -> None:
    assert github.build_queued("t1", _service("{}"), [_build()], None, HINTS) is None
    assert remote.requests == []
