# BFS - tests - fixtures
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

from collections.abc import Iterator
from pathlib import Path
from typing import override

import pytest
import yaml

from bfslib.builds.config import BuildTargetConfigs
from bfslib.builds.mgr import BuildsMgr
from bfslib.builds.types import BuildInfo, BuildQueuedHints, BuildState, Toolchain
from bfslib.config.config import config_reset
from bfslib.config.db import DBConfig
from bfslib.core.mgr import mgr_reset
from bfslib.db.engine import Database
from bfslib.db.retry import Backoff
from bfslib.tenants.ci import TenantsMgr
from bfslib.tenants.driver import TenantServiceDriver
from bfslib.tenants.service import (
    BuildBuildingService,
    BuildBuiltService,
    BuildCanceledService,
    BuildQueuedService,
    ServiceMap,
    ServiceReconciler,
    TenantService,
    UpdateFn,
)

TARGET_CONFIGS = """
class-inheritance:
  gcc: cc
  clang: cc
configs:
  - target: x86_64-linux-gnu
    name: linux-gcc
    classes: [default, linux, gcc]
  - target: aarch64-linux-gnu
    name: linux-arm64-gcc
    classes: [default, linux, gcc]
    machine-pattern: "arm-.*"
  - target: x86_64-microsoft-win32-msvc
    name: windows-msvc
    classes: [default, windows]
"""

TOOLCHAIN = Toolchain(name="public", version="1.0")

SERVICE_TYPE = "fake"


class FakeService(
    BuildQueuedService,
    BuildBuildingService,
    BuildBuiltService,
    BuildCanceledService,
    ServiceReconciler,
):
    """Records notifications, appending an event to the service data."""

    queued: list[tuple[str, list[BuildInfo], BuildState | None, BuildQueuedHints]]
    building: list[tuple[str, BuildInfo]]
    built: list[tuple[str, BuildInfo]]
    canceled: list[tuple[str, TenantService]]
    reconciled: list[str]

    def __init__(self) -> None:
        self.queued = []
        self.building = []
        self.built = []
        self.canceled = []
        self.reconciled = []

    @staticmethod
    def _append(event: str) -> UpdateFn:
        def _update(_tenant_id: str, service: TenantService) -> str | None:
            return f"{service.data};{event}" if service.data else event

        return _update

    @override
    def build_queued(
        self,
        tenant_id: str,
        service: TenantService,
        builds: list[BuildInfo],
        initial_state: BuildState | None,
        hints: BuildQueuedHints,
    ) -> UpdateFn | None:
        self.queued.append((tenant_id, builds, initial_state, hints))
        return self._append(f"queued:{len(builds)}")

    @override
    def build_building(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> UpdateFn | None:
        self.building.append((tenant_id, build))
        return self._append("building")

    @override
    def build_built(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> UpdateFn | None:
        self.built.append((tenant_id, build))
        return self._append("built")

    @override
    def build_canceled(self, tenant_id: str, service: TenantService) -> None:
        self.canceled.append((tenant_id, service))

    @override
    def reconcile(self, tenant_id: str, service: TenantService) -> UpdateFn | None:
        self.reconciled.append(tenant_id)
        return self._append("reconciled")


@pytest.fixture
def db_config(tmp_path: Path) -> DBConfig:
    return DBConfig(
        url=f"sqlite:///{tmp_path / 'bfs.db'}",
        retry_max=3,
        cancel_retry_max=3,
        backoff=0.0,
    )


@pytest.fixture
def db(db_config: DBConfig) -> Iterator[Database]:
    database = Database(db_config)
    database.create_all()
    yield database
    database.close()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def backoff(sleeps: list[float]) -> Backoff:
    return Backoff(0.0, 1.0, 0.0, sleep=sleeps.append)


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def services(fake_service: FakeService) -> ServiceMap:
    services = ServiceMap()
    services.register(SERVICE_TYPE, fake_service)
    return services


@pytest.fixture
def driver(
    db: Database, services: ServiceMap, backoff: Backoff, sleeps: list[float]
) -> TenantServiceDriver:
    return TenantServiceDriver(
        db,
        services,
        retry_max=3,
        cancel_retry_max=3,
        backoff=backoff,
        sleep=sleeps.append,
    )


@pytest.fixture
def target_configs() -> BuildTargetConfigs:
    return BuildTargetConfigs.model_validate(yaml.safe_load(TARGET_CONFIGS))


@pytest.fixture
def builds_mgr(
    db: Database,
    driver: TenantServiceDriver,
    target_configs: BuildTargetConfigs,
    backoff: Backoff,
) -> BuildsMgr:
    return BuildsMgr(
        db,
        driver,
        target_configs,
        retry_max=3,
        backoff=backoff,
        queued_notify_delay=0,
        forced_rebuild_timeout=0,
    )


@pytest.fixture
def tenants_mgr(db: Database, backoff: Backoff) -> TenantsMgr:
    return TenantsMgr(db, retry_max=3, backoff=backoff)


@pytest.fixture
def tenant_id(tenants_mgr: TenantsMgr) -> str:
    """A tenant bound to the fake service, with a single package."""
    tid = tenants_mgr.create(
        TenantService(type=SERVICE_TYPE, id="svc-1", data=None),
        tenant_id="t1",
    )
    tenants_mgr.add_package(tid, "libfoo", "1.0")
    return tid


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """A complete on-disk config, using a sqlite database."""
    targets = tmp_path / "targets.yaml"
    _ = targets.write_text(TARGET_CONFIGS)

    path = tmp_path / "bfs.yaml"
    _ = path.write_text(
        yaml.safe_dump(
            {
                "db": {
                    "url": f"sqlite:///{tmp_path / 'bfs-mgr.db'}",
                    "retry-max": 3,
                    "cancel-retry-max": 3,
                    "backoff": 0.0,
                },
                "build": {
                    "target-configs": str(targets),
                    "queued-notify-delay": 0,
                    "forced-rebuild-timeout": 120,
                },
            }
        )
    )
    return path


@pytest.fixture
def global_state() -> Iterator[None]:
    """Reset the process wide config and manager around a test."""
    config_reset()
    mgr_reset()
    yield
    mgr_reset()
    config_reset()
