# BFS - tests - github webhook
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
import hashlib
import hmac
import json
from datetime import datetime as dt
from pathlib import Path
from typing import Any, override

import pytest
import yaml
from conftest import TOOLCHAIN
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bfslib.builds.mgr import BuildsMgr
from bfslib.builds.types import (
    BuildMachine,
    BuildState,
    ForceState,
    OperationResult,
    ResultStatus,
)
from bfslib.ci.github.auth import GitHubAppAuth
from bfslib.ci.github.service import SERVICE_TYPE
from bfslib.ci.github.service_data import (
    CheckRun,
    InstallationAccessToken,
    ServiceData,
    ServiceDataKind,
)
from bfslib.ci.github.webhook import (
    GitHubWebhookHandler,
    WebhookError,
    WebhookOutcome,
    WebhookSignatureError,
    service_id,
    verify_signature,
)
from bfslib.config.config import config_init
from bfslib.core.mgr import Mgr, mgr_init
from bfslib.routes import github
from bfslib.tenants.ci import TenantsMgr
from bfslib.tenants.service import ServiceMap, TenantService

SECRET = "s3cr3t"

REPO = {
    "node_id": "R_1",
    "full_name": "example/libfoo",
    "clone_url": "https://github.com/example/libfoo.git",
}
FORK = {
    "node_id": "R_2",
    "full_name": "someone/libfoo",
    "clone_url": "https://github.com/someone/libfoo.git",
}


class _FakeAuth(GitHubAppAuth):
    """Hands out installation tokens without talking to GitHub."""

    installations: list[int]

    def __init__(self) -> None:
        super().__init__(1234, "unused")
        self.installations = []

    @override
    def installation_token(self, installation_id: int) -> InstallationAccessToken:
        self.installations.append(installation_id)
        return InstallationAccessToken(
            token="ghs_123",
            expires_at=dt.now(tz=datetime.UTC) + datetime.timedelta(hours=1),
        )


@pytest.fixture
def auth() -> _FakeAuth:
    return _FakeAuth()


@pytest.fixture
def handler(
    auth: _FakeAuth, tenants_mgr: TenantsMgr, builds_mgr: BuildsMgr
) -> GitHubWebhookHandler:
    return GitHubWebhookHandler(SECRET, auth, tenants_mgr, builds_mgr)


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _body(**payload: Any) -> bytes:
    return json.dumps(
        {"repository": REPO, "installation": {"id": 5678}, **payload}
    ).encode()


def _check_suite(action: str, head_sha: str = "aaaa") -> bytes:
    return _body(
        action=action,
        check_suite={"node_id": "CS_1", "head_sha": head_sha, "head_branch": "main"},
    )


def _check_run(action: str, check_run_id: int, head_sha: str = "aaaa") -> bytes:
    return _body(
        action=action,
        check_run={"id": check_run_id, "name": "linux-gcc", "head_sha": head_sha},
    )


def _pull_request(
    action: str, head_sha: str, *, head_repo: dict[str, str], before: str | None = None
) -> bytes:
    pr = {
        "node_id": "PR_1",
        "number": 42,
        "head": {"sha": head_sha, "ref": "feature", "repo": head_repo},
        "base": {"sha": "ffff", "ref": "main", "repo": REPO},
    }
    extra = {"before": before} if before is not None else {}
    return _body(action=action, pull_request=pr, **extra)


def _service_data(tenants_mgr: TenantsMgr, head_sha: str) -> ServiceData:
    tenant = tenants_mgr.find(SERVICE_TYPE, service_id("R_1", head_sha))
    assert tenant is not None
    assert tenant.service is not None
    assert tenant.service.data is not None
    return ServiceData.parse(tenant.service.data)


def _built(builds_mgr: BuildsMgr, tenants_mgr: TenantsMgr, tenant_id: str) -> None:
    """Load a package into the tenant, building its linux-gcc configuration."""
    tenants_mgr.add_package(tenant_id, "libfoo", "1.0")
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = next(b.id for b in infos if b.id.target_config_name == "linux-gcc")
    _ = builds_mgr.claim(build_id, BuildMachine(name="x86-1"))
    _ = builds_mgr.complete(
        build_id, [OperationResult(operation="build", status=ResultStatus.success)]
    )


def test_verify_signature() -> None:
    body = b'{"zen": "keep it simple"}'
    verify_signature(SECRET, body, _sign(body))
    verify_signature(SECRET, body, _sign(body).upper().replace("SHA256=", "sha256="))

    for signature in (None, "", "sha1=abcd", _sign(body, "other"), _sign(b"{}")):
        with pytest.raises(WebhookSignatureError):
            verify_signature(SECRET, body, signature)


def test_check_suite_requested(
    handler: GitHubWebhookHandler, auth: _FakeAuth, tenants_mgr: TenantsMgr
) -> None:
    res = handler.handle("check_suite", _check_suite("requested"))
    assert res.outcome == WebhookOutcome.created
    assert res.tenant_id is not None
    assert auth.installations == [5678]

    sd = _service_data(tenants_mgr, "aaaa")
    assert sd.kind == ServiceDataKind.local
    assert sd.app_id == 1234
    assert sd.installation_id == 5678
    assert sd.repository_full_name == "example/libfoo"
    assert sd.check_sha == sd.report_sha == "aaaa"
    assert sd.pr_number is None
    assert not sd.re_request
    assert sd.installation_access.token == "ghs_123"

    # redelivered.
    again = handler.handle("check_suite", _check_suite("requested"))
    assert again.tenant_id == res.tenant_id


def test_check_suite_rerequested(
    handler: GitHubWebhookHandler, tenants_mgr: TenantsMgr, builds_mgr: BuildsMgr
) -> None:
    res = handler.handle("check_suite", _check_suite("requested"))
    assert res.tenant_id is not None
    _built(builds_mgr, tenants_mgr, res.tenant_id)

    res = handler.handle("check_suite", _check_suite("rerequested"))
    assert res.outcome == WebhookOutcome.rebuilt
    # only the built one, the others are still queued.
    assert res.rebuilds == 1

    builds = builds_mgr.list(tenant_id=res.tenant_id, state=BuildState.built)
    assert [b.force for b in builds] == [ForceState.forced]


def test_check_suite_rerequested_without_tenant(
    handler: GitHubWebhookHandler, tenants_mgr: TenantsMgr
) -> None:
    res = handler.handle("check_suite", _check_suite("rerequested", "bbbb"))
    assert res.outcome == WebhookOutcome.created
    assert _service_data(tenants_mgr, "bbbb").re_request


def test_check_suite_completed(
    handler: GitHubWebhookHandler, auth: _FakeAuth, tenants_mgr: TenantsMgr
) -> None:
    res = handler.handle("check_suite", _check_suite("completed"))
    assert res.outcome == WebhookOutcome.ignored
    assert auth.installations == []
    assert tenants_mgr.find(SERVICE_TYPE, service_id("R_1", "aaaa")) is None


def test_check_run_rerequested(
    handler: GitHubWebhookHandler, tenants_mgr: TenantsMgr, builds_mgr: BuildsMgr
) -> None:
    build_id = "t9/libfoo/1.0/x86_64-linux-gnu/linux-gcc/default/public-1.0"
    sd = ServiceData(
        kind=ServiceDataKind.local,
        installation_access=InstallationAccessToken(
            token="ghs_123", expires_at=dt(2099, 1, 1, tzinfo=datetime.UTC)
        ),
        app_id=1234,
        installation_id=5678,
        repository_node_id="R_1",
        repository_clone_url=REPO["clone_url"],
        repository_full_name=REPO["full_name"],
        check_sha="aaaa",
        report_sha="aaaa",
        check_runs=[
            CheckRun(
                build_id=build_id,
                name="linux-gcc",
                check_run_id=100,
                state=BuildState.built,
                status=ResultStatus.success,
            )
        ],
    )
    _ = tenants_mgr.create(
        TenantService(
            type=SERVICE_TYPE, id=service_id("R_1", "aaaa"), data=sd.serialize()
        ),
        tenant_id="t9",
    )
    _built(builds_mgr, tenants_mgr, "t9")

    res = handler.handle("check_run", _check_run("rerequested", 100))
    assert res.outcome == WebhookOutcome.rebuilt
    assert res.tenant_id == "t9"
    assert res.rebuilds == 1
    build = next(b for b in builds_mgr.list(tenant_id="t9") if str(b.id) == build_id)
    assert build.force == ForceState.forced

    # not one of ours.
    res = handler.handle("check_run", _check_run("rerequested", 7))
    assert res.outcome == WebhookOutcome.ignored
    res = handler.handle("check_run", _check_run("rerequested", 100, "cccc"))
    assert res.outcome == WebhookOutcome.ignored

    res = handler.handle("check_run", _check_run("completed", 100))
    assert res.outcome == WebhookOutcome.ignored


def test_pull_request_shares_branch_tenant(
    handler: GitHubWebhookHandler, tenants_mgr: TenantsMgr
) -> None:
    branch = handler.handle("check_suite", _check_suite("requested"))
    body = _pull_request("opened", "aaaa", head_repo=REPO)
    res = handler.handle("pull_request", body)
    assert res.outcome == WebhookOutcome.created
    assert res.tenant_id == branch.tenant_id
    assert _service_data(tenants_mgr, "aaaa").kind == ServiceDataKind.local


def test_pull_request_remote(
    handler: GitHubWebhookHandler, tenants_mgr: TenantsMgr
) -> None:
    opened = handler.handle(
        "pull_request", _pull_request("opened", "aaaa", head_repo=FORK)
    )
    sd = _service_data(tenants_mgr, "aaaa")
    assert sd.kind == ServiceDataKind.remote
    assert sd.pr_node_id == "PR_1"
    assert sd.pr_number == 42

    res = handler.handle(
        "pull_request",
        _pull_request("synchronize", "bbbb", head_repo=FORK, before="aaaa"),
    )
    assert res.outcome == WebhookOutcome.created
    assert res.tenant_id != opened.tenant_id
    assert _service_data(tenants_mgr, "bbbb").check_sha == "bbbb"

    # the outdated head's tenant is gone.
    assert opened.tenant_id is not None
    old = tenants_mgr.get(opened.tenant_id)
    assert old is not None
    assert old.archived
    assert tenants_mgr.find(SERVICE_TYPE, service_id("R_1", "aaaa")) is None


def test_pull_request_other_actions(
    handler: GitHubWebhookHandler, auth: _FakeAuth
) -> None:
    body = _pull_request("closed", "aaaa", head_repo=FORK)
    res = handler.handle("pull_request", body)
    assert res.outcome == WebhookOutcome.ignored
    assert auth.installations == []


def test_unexpected_events(handler: GitHubWebhookHandler) -> None:
    res = handler.handle("ping", b'{"zen": "keep it simple"}')
    assert res.outcome == WebhookOutcome.ignored

    with pytest.raises(WebhookError):
        _ = handler.handle("deployment", _body(action="created"))

    with pytest.raises(WebhookError):
        _ = handler.handle("check_suite", b"not json")

    with pytest.raises(WebhookError):
        _ = handler.handle("check_suite", _body(action="requested"))


@pytest.fixture
def webhook_config(config_path: Path, tmp_path: Path) -> Path:
    key = tmp_path / "app.pem"
    _ = key.write_text("unused")

    raw = yaml.safe_load(config_path.read_text())
    raw["github"] = {
        "app-id": 1234,
        "private-key": str(key),
        "webhook-secret": SECRET,
    }
    _ = config_path.write_text(yaml.safe_dump(raw))
    return config_path


def _client(mgr: Mgr) -> TestClient:
    mgr.db.create_all()
    app = FastAPI()
    app.include_router(github.router)
    return TestClient(app)


@pytest.fixture
def client(
    webhook_config: Path, services: ServiceMap, global_state: None
) -> TestClient:
    _ = config_init(path=webhook_config)
    return _client(mgr_init(services=services))


def _post(
    client: TestClient,
    event: str | None,
    body: bytes,
    *,
    signature: str | None = None,
    content_type: str = "application/json",
) -> tuple[int, Any]:
    headers = {"Content-Type": content_type}
    if event is not None:
        headers["X-GitHub-Event"] = event
    headers["X-Hub-Signature-256"] = signature if signature is not None else _sign(body)
    res = client.post("/github/webhook", content=body, headers=headers)
    return res.status_code, res.json()


def test_route(client: TestClient) -> None:
    code, body = _post(client, "ping", b'{"zen": "keep it simple"}')
    assert code == 200
    assert body["outcome"] == "ignored"

    # no tenant to rebuild, nothing to authenticate for.
    code, body = _post(client, "check_run", _check_run("rerequested", 100))
    assert code == 200
    assert body["outcome"] == "ignored"


def test_route_bad_requests(client: TestClient) -> None:
    body = _check_suite("requested")

    code, res = _post(client, "check_suite", body, signature=_sign(body, "other"))
    assert code == 400
    assert "HMAC" in res["detail"]

    code, _ = _post(client, "check_suite", body, signature="abcd")
    assert code == 400

    code, _ = _post(client, None, body)
    assert code == 400

    code, _ = _post(client, "check_suite", body, content_type="text/plain")
    assert code == 400

    code, _ = _post(client, "deployment", body)
    assert code == 400

    code, _ = _post(client, "check_suite", b"not json")
    assert code == 400


def test_route_disabled(
    config_path: Path, services: ServiceMap, global_state: None
) -> None:
    _ = config_init(path=config_path)
    client = _client(mgr_init(services=services))
    code, body = _post(client, "ping", b"{}")
    assert code == 404
    assert body["detail"] == "GitHub webhook disabled"
