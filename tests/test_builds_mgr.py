# BFS - tests - builds manager
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

import pytest
from conftest import TOOLCHAIN, FakeService

from bfslib.builds.config import BuildClassExpr, BuildTargetConfigs
from bfslib.builds.mgr import BuildsMgr, ForceConflictError, InvalidForceRequestError
from bfslib.builds.types import (
    BuildID,
    BuildInfo,
    BuildMachine,
    BuildState,
    ForceState,
    OperationResult,
    ResultStatus,
)
from bfslib.db.engine import Database
from bfslib.db.models import utcnow
from bfslib.db.retry import Backoff
from bfslib.errors import ExpiredBuildError
from bfslib.tenants.ci import TenantsMgr
from bfslib.tenants.driver import TenantServiceDriver

MACHINE = BuildMachine(name="x86-1")


def _find(infos: list[BuildInfo], config_name: str) -> BuildInfo:
    return next(b for b in infos if b.id.target_config_name == config_name)


def _built(mgr: BuildsMgr, build_id: BuildID) -> BuildInfo:
    _ = mgr.claim(build_id, MACHINE)
    return mgr.complete(
        build_id, [OperationResult(operation="update", status=ResultStatus.success)]
    )


def test_enqueue(
    builds_mgr: BuildsMgr,
    tenants_mgr: TenantsMgr,
    fake_service: FakeService,
    tenant_id: str,
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    assert sorted(b.id.target_config_name for b in infos) == [
        "linux-arm64-gcc",
        "linux-gcc",
        "windows-msvc",
    ]
    assert all(b.state == BuildState.queued for b in infos)
    assert all(b.force == ForceState.unforced for b in infos)

    assert len(fake_service.queued) == 1
    tid, builds, initial, hints = fake_service.queued[0]
    assert tid == tenant_id
    assert len(builds) == 3
    assert initial is None
    assert hints.single_package_version
    assert hints.single_package_config

    tenant = tenants_mgr.get(tenant_id)
    assert tenant is not None
    assert tenant.queued_timestamp is not None
    assert tenant.service is not None
    assert tenant.service.data == "queued:3"

    # existing builds are left alone.
    assert builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN) == []
    assert len(fake_service.queued) == 1


def test_enqueue_excluded(
    builds_mgr: BuildsMgr,
    tenants_mgr: TenantsMgr,
    fake_service: FakeService,
    tenant_id: str,
) -> None:
    tenants_mgr.add_package(
        tenant_id,
        "libbar",
        "2.0",
        builds=[BuildClassExpr.parse("-windows", "Not supported.")],
    )
    infos = builds_mgr.enqueue(tenant_id, "libbar", "2.0", TOOLCHAIN)
    assert sorted(b.id.target_config_name for b in infos) == [
        "linux-arm64-gcc",
        "linux-gcc",
    ]
    _, _, _, hints = fake_service.queued[0]
    assert not hints.single_package_version


def test_enqueue_unknown_package(builds_mgr: BuildsMgr, tenant_id: str) -> None:
    with pytest.raises(ExpiredBuildError):
        _ = builds_mgr.enqueue(tenant_id, "libbaz", "1.0", TOOLCHAIN)


def test_build_lifecycle(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id

    info = builds_mgr.claim(build_id, MACHINE)
    assert info.state == BuildState.building
    assert info.machine == MACHINE
    assert len(fake_service.building) == 1

    builds_mgr.report_progress(
        build_id, [OperationResult(operation="configure", status=ResultStatus.warning)]
    )

    info = builds_mgr.complete(
        build_id,
        [
            OperationResult(operation="update", status=ResultStatus.success),
            OperationResult(operation="test", status=ResultStatus.error),
        ],
    )
    assert info.state == BuildState.built
    assert info.status == ResultStatus.error
    assert info.completion_timestamp is not None
    assert len(fake_service.built) == 1
    assert fake_service.built[0][1].id == build_id


def test_next_task_machine_pattern(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    _ = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)

    claimed: list[str] = []
    while (info := builds_mgr.next_task(TOOLCHAIN, MACHINE)) is not None:
        assert info.state == BuildState.building
        claimed.append(info.id.target_config_name)

    # the arm configuration requires an arm machine.
    assert sorted(claimed) == ["linux-gcc", "windows-msvc"]
    assert len(fake_service.building) == 2

    info = builds_mgr.next_task(TOOLCHAIN, BuildMachine(name="arm-1"))
    assert info is not None
    assert info.id.target_config_name == "linux-arm64-gcc"


def test_next_task_waits_for_queued_notification(
    db: Database,
    driver: TenantServiceDriver,
    target_configs: BuildTargetConfigs,
    backoff: Backoff,
    tenant_id: str,
) -> None:
    mgr = BuildsMgr(
        db,
        driver,
        target_configs,
        retry_max=3,
        backoff=backoff,
        queued_notify_delay=3600,
    )
    _ = mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    assert mgr.next_task(TOOLCHAIN, MACHINE) is None


def test_next_task_other_toolchain(builds_mgr: BuildsMgr, tenant_id: str) -> None:
    _ = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    other = TOOLCHAIN.model_copy(update={"version": "2.0"})
    assert builds_mgr.next_task(other, MACHINE) is None


def test_rebuild_queued_is_idempotent(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = infos[0].id

    assert builds_mgr.rebuild(build_id) == BuildState.queued
    assert builds_mgr.rebuild(build_id) == BuildState.queued

    info = builds_mgr.get(build_id)
    assert info is not None
    assert info.force == ForceState.unforced
    assert len(fake_service.queued) == 1


def test_rebuild_built(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id
    _ = _built(builds_mgr, build_id)

    assert builds_mgr.rebuild(build_id) == BuildState.built
    info = builds_mgr.get(build_id)
    assert info is not None
    assert info.force == ForceState.forced
    # no notification until requeued.
    assert len(fake_service.queued) == 1

    assert builds_mgr.requeue_forced() == 1
    info = builds_mgr.get(build_id)
    assert info is not None
    assert info.state == BuildState.queued
    assert info.force == ForceState.unforced
    assert info.status is None
    assert info.machine is None

    assert len(fake_service.queued) == 2
    _, builds, initial, _ = fake_service.queued[1]
    assert [b.id for b in builds] == [build_id]
    assert initial == BuildState.built

    assert builds_mgr.requeue_forced() == 0


def test_rebuild_missing(builds_mgr: BuildsMgr, tenant_id: str) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    missing = infos[0].id.model_copy(update={"package_version": "9.9"})
    assert builds_mgr.rebuild(missing) is None


def test_force_building(
    builds_mgr: BuildsMgr,
    tenants_mgr: TenantsMgr,
    fake_service: FakeService,
    tenant_id: str,
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id
    _ = builds_mgr.claim(build_id, MACHINE)

    before = utcnow()
    assert builds_mgr.force(build_id, "broken toolchain") == ForceState.forcing
    tenant = tenants_mgr.get(tenant_id)
    assert tenant is not None
    assert tenant.queued_timestamp is not None
    assert tenant.queued_timestamp >= before
    assert len(fake_service.queued) == 2
    _, builds, initial, _ = fake_service.queued[1]
    assert initial == BuildState.building
    assert builds[0].state == BuildState.queued

    # forcing again changes nothing, and notifies nothing.
    assert builds_mgr.force(build_id, "broken toolchain") == ForceState.forcing
    assert len(fake_service.queued) == 2

    # the attempt finishing while forcing puts the build back in the queue.
    info = builds_mgr.complete(
        build_id, [OperationResult(operation="update", status=ResultStatus.success)]
    )
    assert info.state == BuildState.queued
    assert info.force == ForceState.unforced
    assert fake_service.built == []


def test_force_built(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id
    _ = _built(builds_mgr, build_id)

    assert builds_mgr.force(build_id, "flaky test") == ForceState.forced
    assert len(fake_service.queued) == 1


def test_force_errors(
    builds_mgr: BuildsMgr, tenants_mgr: TenantsMgr, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id

    with pytest.raises(InvalidForceRequestError):
        _ = builds_mgr.force(build_id, "  ")

    with pytest.raises(ForceConflictError):
        _ = builds_mgr.force(build_id, "reason")

    unknown_config = build_id.model_copy(update={"target_config_name": "bsd-gcc"})
    with pytest.raises(ExpiredBuildError, match="no target configuration"):
        _ = builds_mgr.force(unknown_config, "reason")

    unknown_pkg_config = build_id.model_copy(update={"package_config_name": "extra"})
    with pytest.raises(ExpiredBuildError, match="no package configuration"):
        _ = builds_mgr.force(unknown_pkg_config, "reason")

    unknown_toolchain = build_id.model_copy(update={"toolchain_version": "0.1"})
    with pytest.raises(ExpiredBuildError, match="no build"):
        _ = builds_mgr.force(unknown_toolchain, "reason")

    _ = tenants_mgr.cancel("fake", "svc-1")
    with pytest.raises(ExpiredBuildError, match="no tenant"):
        _ = builds_mgr.force(build_id, "reason")


def test_interrupt(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = infos[0].id
    _ = builds_mgr.claim(build_id, MACHINE)

    info = builds_mgr.interrupt(build_id)
    assert info.state == BuildState.queued
    assert info.machine is None

    _, builds, initial, _ = fake_service.queued[-1]
    assert [b.id for b in builds] == [build_id]
    assert initial == BuildState.building


def test_archived_tenant_not_notified(
    builds_mgr: BuildsMgr, fake_service: FakeService, tenant_id: str
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = infos[0].id
    _ = builds_mgr.claim(build_id, MACHINE)

    assert builds_mgr.cancel_tenant(tenant_id) is not None
    assert len(fake_service.canceled) == 1

    info = builds_mgr.complete(
        build_id, [OperationResult(operation="update", status=ResultStatus.success)]
    )
    assert info.state == BuildState.built
    assert fake_service.built == []


def test_reconcile_services(
    builds_mgr: BuildsMgr,
    tenants_mgr: TenantsMgr,
    fake_service: FakeService,
    tenant_id: str,
) -> None:
    assert builds_mgr.reconcile_services() == 1
    assert fake_service.reconciled == [tenant_id]

    tenant = tenants_mgr.get(tenant_id)
    assert tenant is not None
    assert tenant.service is not None
    assert tenant.service.data == "reconciled"


def _timed_mgr(
    db: Database,
    driver: TenantServiceDriver,
    target_configs: BuildTargetConfigs,
    backoff: Backoff,
    **timeouts: int,
) -> BuildsMgr:
    return BuildsMgr(
        db,
        driver,
        target_configs,
        retry_max=3,
        backoff=backoff,
        queued_notify_delay=0,
        **timeouts,
    )


def test_requeue_forced_waits_for_timeout(
    db: Database,
    driver: TenantServiceDriver,
    target_configs: BuildTargetConfigs,
    backoff: Backoff,
    tenant_id: str,
) -> None:
    mgr = _timed_mgr(db, driver, target_configs, backoff, forced_rebuild_timeout=3600)
    infos = mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id
    _ = _built(mgr, build_id)
    assert mgr.rebuild(build_id) == BuildState.built

    # built just now, so not yet due.
    assert mgr.requeue_forced() == 0
    info = mgr.get(build_id)
    assert info is not None
    assert info.state == BuildState.built
    assert info.force == ForceState.forced


def test_requeue_outdated(
    db: Database,
    driver: TenantServiceDriver,
    target_configs: BuildTargetConfigs,
    backoff: Backoff,
    builds_mgr: BuildsMgr,
    fake_service: FakeService,
    tenant_id: str,
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id
    _ = _built(builds_mgr, build_id)

    # no normal rebuild timeout configured.
    assert builds_mgr.requeue_outdated() == 0

    mgr = _timed_mgr(db, driver, target_configs, backoff, normal_rebuild_timeout=0)
    assert mgr.requeue_outdated() == 1
    info = mgr.get(build_id)
    assert info is not None
    assert info.state == BuildState.queued

    _, builds, initial, _ = fake_service.queued[-1]
    assert [b.id for b in builds] == [build_id]
    assert initial == BuildState.built


def test_expire_building(
    db: Database,
    driver: TenantServiceDriver,
    target_configs: BuildTargetConfigs,
    backoff: Backoff,
    builds_mgr: BuildsMgr,
    fake_service: FakeService,
    tenant_id: str,
) -> None:
    infos = builds_mgr.enqueue(tenant_id, "libfoo", "1.0", TOOLCHAIN)
    build_id = _find(infos, "linux-gcc").id
    _ = builds_mgr.claim(build_id, MACHINE)

    # still within the result timeout.
    assert builds_mgr.expire_building() == 0

    mgr = _timed_mgr(db, driver, target_configs, backoff, result_timeout=0)
    assert mgr.expire_building() == 1
    info = mgr.get(build_id)
    assert info is not None
    assert info.state == BuildState.queued
    assert info.machine is None

    _, builds, initial, _ = fake_service.queued[-1]
    assert [b.id for b in builds] == [build_id]
    assert initial == BuildState.building

    assert mgr.expire_building() == 0
