# BFS library - ci - github - webhook
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
import hashlib
import hmac
from typing import TypeVar, override

import pydantic

from bfslib.builds.mgr import BuildsMgr
from bfslib.builds.types import BuildState
from bfslib.ci.github import logger as parent_logger
from bfslib.ci.github.auth import GitHubAppAuth
from bfslib.ci.github.service import SERVICE_TYPE
from bfslib.ci.github.service_data import (
    ServiceData,
    ServiceDataError,
    ServiceDataKind,
)
from bfslib.errors import BFSError
from bfslib.tenants.ci import DuplicateTenantMode, TenantsMgr
from bfslib.tenants.service import TenantService

logger = parent_logger.getChild("webhook")

_SIGNATURE_PREFIX = "sha256="

_E = TypeVar("_E", bound=pydantic.BaseModel)


class WebhookError(BFSError):
    @override
    def __str__(self) -> str:
        return "GitHub webhook error" + (f": {self.msg}" if self.msg else "")


class WebhookSignatureError(WebhookError):
    @override
    def __str__(self) -> str:
        return "GitHub webhook signature error" + (
            f": {self.msg}" if self.msg else ""
        )


def verify_signature(secret: str, body: bytes, signature: str | None) -> None:
    """Check a request body against its `X-Hub-Signature-256` header."""
    if not signature:
        raise WebhookSignatureError("missing signature")

    if not signature.startswith(_SIGNATURE_PREFIX):
        raise WebhookSignatureError(f"malformed signature '{signature}'")

    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    received = signature[len(_SIGNATURE_PREFIX) :].lower()
    if not hmac.compare_digest(expected, received):
        raise WebhookSignatureError("computed HMAC does not match received HMAC")


#
# event payloads, only what we use of them. Unknown fields are ignored.
#


class Repository(pydantic.BaseModel):
    node_id: str
    full_name: str
    clone_url: str


class Installation(pydantic.BaseModel):
    id: int


class _Event(pydantic.BaseModel):
    action: str
    repository: Repository
    installation: Installation


class CheckSuite(pydantic.BaseModel):
    node_id: str
    head_sha: str
    head_branch: str | None = pydantic.Field(default=None)


class CheckSuiteEvent(_Event):
    check_suite: CheckSuite


class CheckRun(pydantic.BaseModel):
    id: int
    name: str
    head_sha: str


class CheckRunEvent(_Event):
    check_run: CheckRun


class PullRequestBranch(pydantic.BaseModel):
    sha: str
    ref: str
    repo: Repository | None = pydantic.Field(default=None)


class PullRequest(pydantic.BaseModel):
    node_id: str
    number: int
    head: PullRequestBranch
    base: PullRequestBranch


class PullRequestEvent(_Event):
    pull_request: PullRequest
    # previous head commit, on `synchronize`.
    before: str | None = pydantic.Field(default=None)


class WebhookOutcome(str, enum.Enum):
    created = "created"
    rebuilt = "rebuilt"
    ignored = "ignored"


class WebhookResult(pydantic.BaseModel):
    event: str
    action: str | None
    outcome: WebhookOutcome
    tenant_id: str | None = pydantic.Field(default=None)
    rebuilds: int = pydantic.Field(default=0)


def service_id(repository_node_id: str, head_sha: str) -> str:
    return f"{repository_node_id}:{head_sha}"


class GitHubWebhookHandler:
    """
    Handles the GitHub App's webhook events.

    A branch push, reported as a check suite request, binds a local tenant to
    the repository's head commit. Pull requests from the same repository
    share that tenant, while pull requests from other repositories get a
    remote tenant of their own. Re-requested check suites and check runs are
    rebuilds of the bound tenant's builds.

    Loading the new tenant's packages is left to the caller.
    """

    _secret: str
    _auth: GitHubAppAuth
    _tenants: TenantsMgr
    _builds: BuildsMgr
    _warning_success: bool

    def __init__(
        self,
        secret: str,
        auth: GitHubAppAuth,
        tenants: TenantsMgr,
        builds: BuildsMgr,
        *,
        warning_success: bool = True,
    ) -> None:
        self._secret = secret
        self._auth = auth
        self._tenants = tenants
        self._builds = builds
        self._warning_success = warning_success

    def verify(self, body: bytes, signature: str | None) -> None:
        verify_signature(self._secret, body, signature)

    def handle(self, event: str, body: bytes) -> WebhookResult:
        """Dispatch a verified event. Raises `WebhookError` on bad requests."""
        match event:
            case "check_suite":
                return self._check_suite(_parse(CheckSuiteEvent, event, body))
            case "check_run":
                return self._check_run(_parse(CheckRunEvent, event, body))
            case "pull_request":
                return self._pull_request(_parse(PullRequestEvent, event, body))
            case "ping" | "push" | "installation" | "installation_repositories":
                logger.debug(f"ignoring '{event}' event")
                return WebhookResult(
                    event=event, action=None, outcome=WebhookOutcome.ignored
                )
            case _:
                msg = f"unexpected event '{event}'"
                logger.error(msg)
                raise WebhookError(msg)

    def _ignored(self, event: str, action: str) -> WebhookResult:
        logger.info(f"ignoring '{event}' action '{action}'")
        return WebhookResult(event=event, action=action, outcome=WebhookOutcome.ignored)

    def _create(
        self,
        ev: _Event,
        kind: ServiceDataKind,
        head_sha: str,
        *,
        re_request: bool = False,
        pr: PullRequest | None = None,
    ) -> str:
        token = self._auth.installation_token(ev.installation.id)
        sd = ServiceData(
            kind=kind,
            re_request=re_request,
            warning_success=self._warning_success,
            installation_access=token,
            app_id=self._auth.app_id,
            installation_id=ev.installation.id,
            repository_node_id=ev.repository.node_id,
            repository_clone_url=ev.repository.clone_url,
            repository_full_name=ev.repository.full_name,
            pr_node_id=pr.node_id if pr is not None else None,
            pr_number=pr.number if pr is not None else None,
            check_sha=head_sha,
            report_sha=head_sha,
        )
        service = TenantService(
            type=SERVICE_TYPE,
            id=service_id(ev.repository.node_id, head_sha),
            data=sd.serialize(),
        )
        return self._tenants.create(service, duplicate=DuplicateTenantMode.ignore)

    def _rebuild_tenant(self, tenant_id: str) -> int:
        n = 0
        for build in self._builds.list(tenant_id=tenant_id):
            if build.state == BuildState.queued:
                continue
            if self._builds.rebuild(build.id) is not None:
                n += 1
        return n

    def _check_suite(self, ev: CheckSuiteEvent) -> WebhookResult:
        cs = ev.check_suite
        match ev.action:
            case "requested":
                tid = self._create(ev, ServiceDataKind.local, cs.head_sha)
                return WebhookResult(
                    event="check_suite",
                    action=ev.action,
                    outcome=WebhookOutcome.created,
                    tenant_id=tid,
                )
            case "rerequested":
                sid = service_id(ev.repository.node_id, cs.head_sha)
                tenant = self._tenants.find(SERVICE_TYPE, sid)
                if tenant is None or tenant.archived:
                    # nothing left to rebuild, start over.
                    tid = self._create(
                        ev, ServiceDataKind.local, cs.head_sha, re_request=True
                    )
                    return WebhookResult(
                        event="check_suite",
                        action=ev.action,
                        outcome=WebhookOutcome.created,
                        tenant_id=tid,
                    )

                n = self._rebuild_tenant(tenant.id)
                logger.info(f"rebuild of {n} builds requested for '{tenant.id}'")
                return WebhookResult(
                    event="check_suite",
                    action=ev.action,
                    outcome=WebhookOutcome.rebuilt,
                    tenant_id=tenant.id,
                    rebuilds=n,
                )
            case _:
                # includes `completed`, which we cause ourselves.
                return self._ignored("check_suite", ev.action)

    def _check_run(self, ev: CheckRunEvent) -> WebhookResult:
        if ev.action != "rerequested":
            return self._ignored("check_run", ev.action)

        cr = ev.check_run
        sid = service_id(ev.repository.node_id, cr.head_sha)
        tenant = self._tenants.find(SERVICE_TYPE, sid)
        if tenant is None or tenant.archived or tenant.service is None:
            logger.info(f"no tenant for check run '{cr.name}' ({cr.id})")
            return self._ignored("check_run", ev.action)

        try:
            sd = ServiceData.parse(tenant.service.data or "")
        except ServiceDataError as e:
            logger.error(f"unable to rebuild check run '{cr.name}': {e}")
            return self._ignored("check_run", ev.action)

        build = None
        ours = next((c for c in sd.check_runs if c.check_run_id == cr.id), None)
        if ours is not None:
            builds = self._builds.list(tenant_id=tenant.id)
            build = next((b for b in builds if str(b.id) == ours.build_id), None)

        if build is None:
            logger.info(f"no build for check run '{cr.name}' ({cr.id})")
            return self._ignored("check_run", ev.action)

        state = self._builds.rebuild(build.id)
        logger.info(f"rebuild requested for check run '{cr.name}' ({cr.id})")
        return WebhookResult(
            event="check_run",
            action=ev.action,
            outcome=WebhookOutcome.rebuilt,
            tenant_id=tenant.id,
            rebuilds=1 if state is not None else 0,
        )

    def _pull_request(self, ev: PullRequestEvent) -> WebhookResult:
        if ev.action not in ("opened", "synchronize"):
            return self._ignored("pull_request", ev.action)

        pr = ev.pull_request
        head_repo = pr.head.repo
        remote = head_repo is not None and head_repo.node_id != ev.repository.node_id

        if not remote:
            # checked along with the branch push.
            tid = self._create(ev, ServiceDataKind.local, pr.head.sha)
        else:
            if ev.action == "synchronize" and ev.before is not None:
                prev = service_id(ev.repository.node_id, ev.before)
                if self._tenants.cancel(SERVICE_TYPE, prev) is not None:
                    logger.info(f"canceled tenant for outdated head '{ev.before}'")
            tid = self._create(ev, ServiceDataKind.remote, pr.head.sha, pr=pr)

        return WebhookResult(
            event="pull_request",
            action=ev.action,
            outcome=WebhookOutcome.created,
            tenant_id=tid,
        )


def _parse(model: type[_E], event: str, body: bytes) -> _E:
    try:
        return model.model_validate_json(body)
    except pydantic.ValidationError as e:
        msg = f"malformed '{event}' event: {e}"
        logger.error(msg)
        raise WebhookError(msg) from e
