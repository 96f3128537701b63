# BFS library - builds - manager
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

import datetime
import re
from collections.abc import Callable
from typing import TypeVar, override

import pydantic
from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from bfslib.builds import logger as parent_logger
from bfslib.builds import tracker
from bfslib.builds.config import BuildTargetConfigs, excluded
from bfslib.builds.types import (
    BuildID,
    BuildInfo,
    BuildMachine,
    BuildQueuedHints,
    BuildState,
    ForceState,
    OperationResult,
    Toolchain,
)
from bfslib.db.engine import Database
from bfslib.db.models import Build, Package, Tenant, utcnow
from bfslib.db.retry import Backoff, retry_transaction
from bfslib.errors import BFSError, ExpiredBuildError
from bfslib.tenants.driver import TenantServiceDriver
from bfslib.tenants.service import (
    BuildQueuedService,
    ServiceReconciler,
    TenantService,
)

logger = parent_logger.getChild("mgr")

T = TypeVar("T")

# reasons longer than this are truncated when logged.
_MAX_REASON_LOG_LEN = 50


class InvalidForceRequestError(BFSError):
    @override
    def __str__(self) -> str:
        return "Invalid force request" + (f": {self.msg}" if self.msg else "")


class ForceConflictError(BFSError):
    @override
    def __str__(self) -> str:
        return "Force conflict" + (f": {self.msg}" if self.msg else "")


class _QueuedBatch(pydantic.BaseModel):
    tenant_id: str
    service: TenantService
    builds: list[BuildInfo]
    hints: BuildQueuedHints


class _Notification(pydantic.BaseModel):
    tenant_id: str
    service: TenantService
    build: BuildInfo


def _bound_service(tenant: Tenant | None) -> TenantService | None:
    """Obtain the tenant's service, if it may still be notified."""
    if tenant is None or tenant.archived:
        return None
    return tenant.service


def _hints(session: Session, pkg: Package) -> BuildQueuedHints:
    npkgs = session.scalar(
        select(func.count())
        .select_from(Package)
        .where(Package.tenant_id == pkg.tenant_id)
    )
    return BuildQueuedHints(
        single_package_version=npkgs == 1,
        single_package_config=len(pkg.configs) == 1,
    )


def _get_package(
    session: Session, tenant_id: str, name: str, version: str
) -> Package | None:
    return session.get(Package, (tenant_id, name, version))


def _queued_batches(
    session: Session, builds: list[Build], now: datetime.datetime
) -> list[_QueuedBatch]:
    """Group builds just put back in the queue by package, for notification."""
    by_pkg: dict[tuple[str, str, str], list[BuildInfo]] = {}
    for build in builds:
        key = (build.tenant_id, build.package_name, build.package_version)
        by_pkg.setdefault(key, []).append(build.info())

    batches: list[_QueuedBatch] = []
    for (tenant_id, name, version), infos in by_pkg.items():
        tenant = session.get(Tenant, tenant_id)
        service = _bound_service(tenant)
        pkg = _get_package(session, tenant_id, name, version)
        if tenant is None or service is None or pkg is None:
            continue

        tenant.queued_timestamp = now
        batches.append(
            _QueuedBatch(
                tenant_id=tenant_id,
                service=service,
                builds=infos,
                hints=_hints(session, pkg),
            )
        )
    return batches


class BuildsMgr:
    """
    Drives builds through their states, notifying tenant services.

    State transitions are committed before notifying the tenant's service, if
    any, and a service is only notified if its tenant is not archived.
    """

    _db: Database
    _driver: TenantServiceDriver
    _target_configs: BuildTargetConfigs
    _retry_max: int
    _backoff: Backoff
    _queued_notify_delay: datetime.timedelta
    _forced_rebuild_timeout: datetime.timedelta
    _normal_rebuild_timeout: datetime.timedelta | None
    _result_timeout: datetime.timedelta
    _default_underlying: str

    def __init__(
        self,
        db: Database,
        driver: TenantServiceDriver,
        target_configs: BuildTargetConfigs,
        *,
        retry_max: int,
        backoff: Backoff,
        queued_notify_delay: int = 30,
        forced_rebuild_timeout: int = 600,
        normal_rebuild_timeout: int | None = None,
        result_timeout: int = 10800,
        default_underlying: str = "default",
    ) -> None:
        self._db = db
        self._driver = driver
        self._target_configs = target_configs
        self._retry_max = retry_max
        self._backoff = backoff
        self._queued_notify_delay = datetime.timedelta(seconds=queued_notify_delay)
        self._forced_rebuild_timeout = datetime.timedelta(
            seconds=forced_rebuild_timeout
        )
        self._normal_rebuild_timeout = (
            datetime.timedelta(seconds=normal_rebuild_timeout)
            if normal_rebuild_timeout is not None
            else None
        )
        self._result_timeout = datetime.timedelta(seconds=result_timeout)
        self._default_underlying = default_underlying

    @property
    def target_configs(self) -> BuildTargetConfigs:
        return self._target_configs

    def _tx(self, fn: Callable[[Session], T], what: str) -> T:
        return retry_transaction(
            self._db, fn, retry_max=self._retry_max, backoff=self._backoff, what=what
        )

    def _notify_queued(self, batch: _QueuedBatch, initial: BuildState | None) -> None:
        _ = self._driver.notify_queued(
            batch.tenant_id, batch.service, batch.builds, initial, batch.hints
        )

    def get(self, build_id: BuildID) -> BuildInfo | None:
        def _do(session: Session) -> BuildInfo | None:
            build = session.get(Build, Build.key(build_id))
            return build.info() if build is not None else None

        return self._tx(_do, f"get build '{build_id}'")

    def list(
        self, *, tenant_id: str | None = None, state: BuildState | None = None
    ) -> list[BuildInfo]:
        def _do(session: Session) -> list[BuildInfo]:
            stmt = select(Build).order_by(Build.timestamp)
            if tenant_id is not None:
                stmt = stmt.where(Build.tenant_id == tenant_id)
            if state is not None:
                stmt = stmt.where(Build.state == state)
            return [b.info() for b in session.scalars(stmt)]

        return self._tx(_do, "list builds")

    def enqueue(
        self,
        tenant_id: str,
        package_name: str,
        package_version: str,
        toolchain: Toolchain,
    ) -> list[BuildInfo]:
        """
        Create builds for all configurations a package version is eligible for.

        Existing builds are left untouched. Returns the newly created builds.
        """
        configs = self._target_configs

        def _do(session: Session) -> tuple[list[BuildInfo], _QueuedBatch | None]:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None or tenant.archived:
                msg = f"tenant '{tenant_id}' does not exist or is archived"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            pkg = _get_package(session, tenant_id, package_name, package_version)
            if pkg is None or not pkg.buildable:
                msg = f"package '{package_name}/{package_version}' not buildable"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            now = utcnow()
            created: list[Build] = []
            for tc in configs.configs:
                for pc in pkg.configs:
                    is_excluded, reason = excluded(
                        pkg.effective_builds(pc),
                        pkg.effective_constraints(pc),
                        tc,
                        configs.class_inheritance_map,
                        self._default_underlying,
                    )
                    if is_excluded:
                        logger.debug(
                            f"'{package_name}/{package_version}' config '{pc.name}' "
                            + f"excluded from '{tc.target}/{tc.name}': {reason}"
                        )
                        continue

                    build_id = BuildID(
                        tenant=tenant_id,
                        package_name=package_name,
                        package_version=package_version,
                        target=tc.target,
                        target_config_name=tc.name,
                        package_config_name=pc.name,
                        toolchain_name=toolchain.name,
                        toolchain_version=toolchain.version,
                    )
                    if session.get(Build, Build.key(build_id)) is not None:
                        continue

                    build = Build(
                        tenant_id=build_id.tenant,
                        package_name=build_id.package_name,
                        package_version=build_id.package_version,
                        target=build_id.target,
                        target_config_name=build_id.target_config_name,
                        package_config_name=build_id.package_config_name,
                        toolchain_name=build_id.toolchain_name,
                        toolchain_version=build_id.toolchain_version,
                        state=BuildState.queued,
                        force=ForceState.unforced,
                        timestamp=now,
                        completion_timestamp=None,
                        status=None,
                        raw_machine=None,
                        raw_auxiliary_machines=[],
                        raw_results=[],
                    )
                    session.add(build)
                    created.append(build)

            session.flush()
            infos = [b.info() for b in created]

            service = _bound_service(tenant)
            if not infos or service is None:
                return (infos, None)

            tenant.queued_timestamp = now
            batch = _QueuedBatch(
                tenant_id=tenant_id,
                service=service,
                builds=infos,
                hints=_hints(session, pkg),
            )
            return (infos, batch)

        infos, batch = self._tx(_do, f"enqueue '{package_name}/{package_version}'")
        logger.info(
            f"queued {len(infos)} builds for '{package_name}/{package_version}' "
            + f"in tenant '{tenant_id}'"
        )

        if batch is not None:
            self._notify_queued(batch, None)
        return infos

    def _claim(
        self,
        session: Session,
        build: Build,
        machine: BuildMachine,
        auxiliary_machines: list[BuildMachine],
    ) -> tuple[BuildInfo, _Notification | None]:
        tracker.start_building(build, machine, auxiliary_machines, utcnow())
        info = build.info()
        service = _bound_service(session.get(Tenant, build.tenant_id))
        if service is None:
            return (info, None)
        return (
            info,
            _Notification(tenant_id=build.tenant_id, service=service, build=info),
        )

    def claim(
        self,
        build_id: BuildID,
        machine: BuildMachine,
        auxiliary_machines: list[BuildMachine] | None = None,
    ) -> BuildInfo:
        """A worker claims a queued build."""

        def _do(session: Session) -> tuple[BuildInfo, _Notification | None]:
            build = session.get(Build, Build.key(build_id))
            if build is None:
                msg = f"build '{build_id}' does not exist"
                logger.info(msg)
                raise ExpiredBuildError(msg)
            return self._claim(session, build, machine, auxiliary_machines or [])

        info, notification = self._tx(_do, f"claim build '{build_id}'")
        logger.info(f"build '{build_id}' claimed by '{machine.name}'")

        if notification is not None:
            _ = self._driver.notify_building(
                notification.tenant_id, notification.service, notification.build
            )
        return info

    def _can_build(self, build: Build, machine: BuildMachine) -> bool:
        tc = self._target_configs.find(build.target, build.target_config_name)
        if tc is None:
            # configuration no longer exists.
            return False
        return tc.machine_pattern is None or (
            re.fullmatch(tc.machine_pattern, machine.name) is not None
        )

    def next_task(
        self, toolchain: Toolchain, machine: BuildMachine
    ) -> BuildInfo | None:
        """
        Claim the oldest queued build for the given toolchain.

        Builds of tenants which were recently notified about queued builds are
        held back for a while, so that their services are more likely to see
        the notifications in order.
        """

        def _do(session: Session) -> tuple[BuildInfo, _Notification | None] | None:
            notified_before = utcnow() - self._queued_notify_delay
            stmt = (
                select(Build)
                .join(Tenant, Tenant.id == Build.tenant_id)
                .join(
                    Package,
                    and_(
                        Package.tenant_id == Build.tenant_id,
                        Package.name == Build.package_name,
                        Package.version == Build.package_version,
                    ),
                )
                .where(
                    Build.state == BuildState.queued,
                    Build.toolchain_name == toolchain.name,
                    Build.toolchain_version == toolchain.version,
                    Tenant.archived.is_(False),
                    Package.buildable.is_(True),
                    or_(
                        Tenant.queued_timestamp.is_(None),
                        Tenant.queued_timestamp <= notified_before,
                    ),
                )
                .order_by(Build.timestamp)
            )
            for build in session.scalars(stmt):
                if self._can_build(build, machine):
                    return self._claim(session, build, machine, [])
            return None

        res = self._tx(_do, "next task")
        if res is None:
            logger.debug(
                f"no task for toolchain '{toolchain.name}/{toolchain.version}'"
            )
            return None

        info, notification = res
        logger.info(f"build '{info.id}' handed to '{machine.name}'")
        if notification is not None:
            _ = self._driver.notify_building(
                notification.tenant_id, notification.service, notification.build
            )
        return info

    def report_progress(
        self, build_id: BuildID, results: list[OperationResult]
    ) -> None:
        def _do(session: Session) -> None:
            build = session.get(Build, Build.key(build_id))
            if build is None:
                msg = f"build '{build_id}' does not exist"
                logger.info(msg)
                raise ExpiredBuildError(msg)
            tracker.report_progress(build, results)

        _ = self._tx(_do, f"report progress for '{build_id}'")

    def complete(self, build_id: BuildID, results: list[OperationResult]) -> BuildInfo:
        """
        A worker finished a build.

        The `built` notification is not sent for builds a rebuild was forced for
        meanwhile, as their service has already been told they are queued.
        """

        def _do(session: Session) -> tuple[BuildInfo, _Notification | None]:
            build = session.get(Build, Build.key(build_id))
            if build is None:
                msg = f"build '{build_id}' does not exist"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            state = tracker.complete(build, results, utcnow())
            info = build.info()
            service = _bound_service(session.get(Tenant, build.tenant_id))
            if state != BuildState.built or service is None:
                return (info, None)
            return (
                info,
                _Notification(tenant_id=build.tenant_id, service=service, build=info),
            )

        info, notification = self._tx(_do, f"complete build '{build_id}'")
        logger.info(
            f"build '{build_id}' finished: state '{info.state.value}'"
            + (f", status '{info.status.value}'" if info.status else "")
        )

        if notification is not None:
            _ = self._driver.notify_built(
                notification.tenant_id, notification.service, notification.build
            )
        return info

    def interrupt(self, build_id: BuildID) -> BuildInfo:
        """Put a build back in the queue, notifying it as queued."""

        def _do(session: Session) -> tuple[BuildInfo, _QueuedBatch | None]:
            build = session.get(Build, Build.key(build_id))
            if build is None:
                msg = f"build '{build_id}' does not exist"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            now = utcnow()
            tracker.interrupt(build, now)
            info = build.info()

            tenant = session.get(Tenant, build.tenant_id)
            service = _bound_service(tenant)
            pkg = _get_package(
                session, build.tenant_id, build.package_name, build.package_version
            )
            if tenant is None or service is None or pkg is None:
                return (info, None)

            tenant.queued_timestamp = now
            return (
                info,
                _QueuedBatch(
                    tenant_id=tenant.id,
                    service=service,
                    builds=[info],
                    hints=_hints(session, pkg),
                ),
            )

        info, batch = self._tx(_do, f"interrupt build '{build_id}'")
        logger.info(f"build '{build_id}' interrupted")

        if batch is not None:
            self._notify_queued(batch, BuildState.building)
        return info

    def _requeue_built(
        self, force: ForceState, timeout: datetime.timedelta, what: str
    ) -> int:
        def _do(session: Session) -> tuple[int, list[_QueuedBatch]]:
            now = utcnow()
            stmt = (
                select(Build)
                .join(Tenant, Tenant.id == Build.tenant_id)
                .where(
                    Build.state == BuildState.built,
                    Build.force == force,
                    Build.timestamp <= now - timeout,
                    Tenant.archived.is_(False),
                )
                .order_by(Build.timestamp)
            )
            builds = list(session.scalars(stmt))
            for build in builds:
                tracker.requeue(build, now)
            return (len(builds), _queued_batches(session, builds, now))

        n, batches = self._tx(_do, what)
        if n:
            logger.info(f"{what}: requeued {n} builds")

        for batch in batches:
            self._notify_queued(batch, BuildState.built)
        return n

    def requeue_forced(self) -> int:
        """
        Queue the builds a rebuild was forced for, once they have been built
        for longer than the forced rebuild timeout. Returns how many.
        """
        return self._requeue_built(
            ForceState.forced, self._forced_rebuild_timeout, "requeue forced builds"
        )

    def requeue_outdated(self) -> int:
        """Queue builds built longer than the normal rebuild timeout ago."""
        if self._normal_rebuild_timeout is None:
            return 0
        return self._requeue_built(
            ForceState.unforced,
            self._normal_rebuild_timeout,
            "requeue outdated builds",
        )

    def expire_building(self) -> int:
        """
        Put builds whose results never came back in the queue again.

        A build is expired once it has been building for longer than the result
        timeout, its worker presumably gone. Returns how many were expired.
        """

        def _do(session: Session) -> tuple[list[BuildID], list[_QueuedBatch]]:
            now = utcnow()
            stmt = (
                select(Build)
                .where(
                    Build.state == BuildState.building,
                    Build.timestamp <= now - self._result_timeout,
                )
                .order_by(Build.timestamp)
            )
            builds = list(session.scalars(stmt))
            for build in builds:
                tracker.interrupt(build, now)
            batches = _queued_batches(session, builds, now)
            return ([b.build_id for b in builds], batches)

        expired, batches = self._tx(_do, "expire building builds")
        for build_id in expired:
            logger.warning(f"build '{build_id}' result timed out, requeued")

        for batch in batches:
            self._notify_queued(batch, BuildState.building)
        return len(expired)

    def rebuild(self, build_id: BuildID) -> BuildState | None:
        """
        Request a build to be rebuilt.

        Returns `None` if the build, its package, or its tenant are gone.
        Otherwise returns the build's current state, requesting the rebuild
        unless the build is already queued. No notification is sent.

        Whether the build's target configuration still exists is up to the
        caller to check.
        """

        def _do(session: Session) -> BuildState | None:
            tenant = session.get(Tenant, build_id.tenant)
            if tenant is None or tenant.archived:
                return None

            pkg = _get_package(
                session,
                build_id.tenant,
                build_id.package_name,
                build_id.package_version,
            )
            if pkg is None or not pkg.buildable:
                return None

            build = session.get(Build, Build.key(build_id))
            if build is None:
                return None

            if build.state == BuildState.queued:
                return build.state

            if tracker.request_force(build):
                logger.debug(f"rebuild requested for '{build_id}'")
            return build.state

        return self._tx(_do, f"rebuild '{build_id}'")

    def force(self, build_id: BuildID, reason: str) -> ForceState:
        """
        Force a build to be rebuilt, on an operator's request.

        A build interrupted this way is immediately notified as queued.
        Returns the build's resulting force state.
        """
        if not reason.strip():
            msg = "missing rebuild reason"
            logger.info(msg)
            raise InvalidForceRequestError(msg)

        expired = "package build configuration expired"

        tc = self._target_configs.find(build_id.target, build_id.target_config_name)
        if tc is None:
            msg = (
                f"{expired}: no target configuration "
                + f"'{build_id.target}/{build_id.target_config_name}'"
            )
            logger.info(msg)
            raise ExpiredBuildError(msg)

        def _do(session: Session) -> tuple[ForceState, _QueuedBatch | None]:
            tenant = session.get(Tenant, build_id.tenant)
            if tenant is None or tenant.archived:
                msg = f"{expired}: no tenant '{build_id.tenant}'"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            pkg = _get_package(
                session,
                build_id.tenant,
                build_id.package_name,
                build_id.package_version,
            )
            if pkg is None or not pkg.buildable:
                msg = (
                    f"{expired}: no package "
                    + f"'{build_id.package_name}/{build_id.package_version}'"
                )
                logger.info(msg)
                raise ExpiredBuildError(msg)

            if pkg.find_config(build_id.package_config_name) is None:
                msg = (
                    f"{expired}: no package configuration "
                    + f"'{build_id.package_config_name}'"
                )
                logger.info(msg)
                raise ExpiredBuildError(msg)

            build = session.get(Build, Build.key(build_id))
            if build is None:
                msg = f"{expired}: no build '{build_id}'"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            if build.state == BuildState.queued:
                msg = f"unable to force build '{build_id}': state is queued"
                logger.info(msg)
                raise ForceConflictError(msg)

            if not tracker.request_force(build):
                return (build.force, None)

            short = reason[:_MAX_REASON_LOG_LEN] + (
                "..." if len(reason) > _MAX_REASON_LOG_LEN else ""
            )
            logger.warning(f"force rebuild for '{build_id}': {short}")

            service = _bound_service(tenant)
            if (
                build.force != ForceState.forcing
                or service is None
                or self._driver.services.find(service.type, BuildQueuedService) is None
            ):
                return (build.force, None)

            # prevent a concurrent batch notifier from also notifying this
            # build as queued.
            tenant.queued_timestamp = utcnow()
            return (
                build.force,
                _QueuedBatch(
                    tenant_id=tenant.id,
                    service=service,
                    builds=[build.info().as_queued()],
                    hints=_hints(session, pkg),
                ),
            )

        force, batch = self._tx(_do, f"force build '{build_id}'")

        if batch is not None:
            self._notify_queued(batch, BuildState.building)
        return force

    def reconcile_services(self) -> int:
        """
        Have services retry pushing unsynchronized state.

        Returns the number of tenants whose service state was updated.
        """

        def _do(session: Session) -> list[tuple[str, TenantService]]:
            stmt = select(Tenant).where(
                Tenant.archived.is_(False),
                Tenant.service_type.is_not(None),
            )
            return [
                (t.id, t.service)
                for t in session.scalars(stmt)
                if t.service is not None
            ]

        n = 0
        for tenant_id, service in self._tx(_do, "list service tenants"):
            svc = self._driver.services.find(service.type, ServiceReconciler)
            if svc is None:
                continue

            try:
                fn = svc.reconcile(tenant_id, service)
            except Exception:
                logger.exception(f"service '{service.type}' failed reconciling")
                continue

            if fn is None:
                continue

            if self._driver.update_service_state(service.type, service.id, fn):
                n += 1

        if n:
            logger.info(f"reconciled service state for {n} tenants")
        return n

    def cancel_tenant(self, tenant_id: str) -> TenantService | None:
        return self._driver.cancel_tenant(tenant_id)
