# BFS library - core - mgr
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

import time
from typing import Annotated, override

from fastapi import Depends

from bfslib.builds.config import BuildTargetConfigs, BuildTargetConfigsError
from bfslib.builds.mgr import BuildsMgr
from bfslib.ci.github.auth import GitHubAppAuth, GitHubAppAuthError
from bfslib.ci.github.service import SERVICE_TYPE as GITHUB_SERVICE_TYPE
from bfslib.ci.github.service import GitHubCIService
from bfslib.ci.github.webhook import GitHubWebhookHandler
from bfslib.config.config import Config, get_config
from bfslib.core import logger as parent_logger
from bfslib.db.engine import Database
from bfslib.db.retry import Backoff, SleepFn
from bfslib.errors import BFSError
from bfslib.tenants.ci import TenantsMgr
from bfslib.tenants.driver import TenantServiceDriver
from bfslib.tenants.service import ServiceMap

logger = parent_logger.getChild("mgr")


class MgrError(BFSError):
    @override
    def __str__(self) -> str:
        return "Manager error" + (f": {self.msg}" if self.msg else "")


class Mgr:
    """Holds the database and the managers operating on it."""

    _config: Config
    _db: Database
    _services: ServiceMap
    _driver: TenantServiceDriver
    _builds: BuildsMgr
    _tenants: TenantsMgr
    _github_webhook: GitHubWebhookHandler | None

    def __init__(
        self,
        config: Config,
        *,
        services: ServiceMap | None = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self._config = config

        try:
            target_configs = BuildTargetConfigs.load(config.build.target_configs)
        except BuildTargetConfigsError as e:
            msg = f"unable to load build target configs: {e}"
            logger.error(msg)
            raise MgrError(msg) from e

        try:
            github_auth = (
                GitHubAppAuth.from_config(config.github)
                if config.github is not None
                else None
            )
        except GitHubAppAuthError as e:
            msg = f"unable to set up GitHub app auth: {e}"
            logger.error(msg)
            raise MgrError(msg) from e

        self._db = Database(config.db)

        if services is None:
            services = ServiceMap()
            if config.github is not None:
                services.register(
                    GITHUB_SERVICE_TYPE,
                    GitHubCIService(
                        config.github.api_url,
                        timeout=config.github.timeout,
                        token_provider=github_auth,
                    ),
                )
        self._services = services
        logger.info(f"registered services: {self._services.types()}")

        backoff = Backoff.from_config(config.db, sleep=sleep)
        self._driver = TenantServiceDriver.from_config(
            self._db, self._services, config.db, sleep=sleep
        )
        self._builds = BuildsMgr(
            self._db,
            self._driver,
            target_configs,
            retry_max=config.db.retry_max,
            backoff=backoff,
            queued_notify_delay=config.build.queued_notify_delay,
            forced_rebuild_timeout=config.build.forced_rebuild_timeout,
            normal_rebuild_timeout=config.build.normal_rebuild_timeout,
            result_timeout=config.build.result_timeout,
            default_underlying=config.build.default_underlying_class,
        )
        self._tenants = TenantsMgr(
            self._db, retry_max=config.db.retry_max, backoff=backoff
        )

        self._github_webhook = None
        if config.github is not None and config.github.webhook_secret is not None:
            if github_auth is None:
                logger.warning("GitHub webhook secret set without app, disabled")
            else:
                self._github_webhook = GitHubWebhookHandler(
                    config.github.webhook_secret.get_secret_value(),
                    github_auth,
                    self._tenants,
                    self._builds,
                )

    @property
    def config(self) -> Config:
        return self._config

    @property
    def db(self) -> Database:
        return self._db

    @property
    def services(self) -> ServiceMap:
        return self._services

    @property
    def driver(self) -> TenantServiceDriver:
        return self._driver

    @property
    def builds(self) -> BuildsMgr:
        return self._builds

    @property
    def tenants(self) -> TenantsMgr:
        return self._tenants

    @property
    def github_webhook(self) -> GitHubWebhookHandler | None:
        return self._github_webhook

    def close(self) -> None:
        self._db.close()


_mgr: Mgr | None = None


def mgr_init(*, services: ServiceMap | None = None) -> Mgr:
    global _mgr

    if not _mgr:
        logger.info("init bfs mgr")
        _mgr = Mgr(get_config(), services=services)

    return _mgr


def mgr_reset() -> None:
    global _mgr
    if _mgr:
        _mgr.close()
    _mgr = None


def get_mgr() -> Mgr:
    assert _mgr, "BFS manager not set up"
    return _mgr


BFSMgr = Annotated[Mgr, Depends(get_mgr)]
