# BFS library - tenants - service state driver
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
from collections.abc import Callable
from typing import override

from sqlalchemy import select
from sqlalchemy.orm import Session

from bfslib.builds.types import BuildInfo, BuildQueuedHints, BuildState
from bfslib.config.db import DBConfig
from bfslib.db.engine import Database
from bfslib.db.models import Tenant
from bfslib.db.retry import (
    Backoff,
    SleepFn,
    is_recoverable,
    retry_transaction,
)
from bfslib.errors import BFSError
from bfslib.tenants import logger as parent_logger
from bfslib.tenants.service import (
    BuildBuildingService,
    BuildBuiltService,
    BuildCanceledService,
    BuildQueuedService,
    ServiceMap,
    TenantService,
    UpdateFn,
)

logger = parent_logger.getChild("driver")


# (tenant, if found) -> whether the tenant was changed
MutateFn = Callable[[Tenant | None], bool]


class TenantServiceStateError(BFSError):
    """Unable to update a tenant's service state; the tenant has been canceled."""

    @override
    def __str__(self) -> str:
        return "Tenant service state error" + (f": {self.msg}" if self.msg else "")


class ServiceStateInvariantError(BFSError):
    @override
    def __str__(self) -> str:
        return "Service state invariant violated" + (
            f": {self.msg}" if self.msg else ""
        )


def find_tenant_by_service(
    session: Session, service_type: str, service_id: str
) -> Tenant | None:
    return session.scalars(
        select(Tenant).where(
            Tenant.service_type == service_type,
            Tenant.service_id == service_id,
        )
    ).one_or_none()


class TenantServiceDriver:
    """
    Persists third-party service state, and notifies services.

    Service state updates are retried on recoverable storage errors. Should
    we run out of retries, the tenant is canceled and its service notified
    about the cancellation, so that the service is not left waiting on
    notifications that will never come.
    """

    _db: Database
    _services: ServiceMap
    _retry_max: int
    _cancel_retry_max: int
    _backoff: Backoff
    _no_backoff: Backoff

    def __init__(
        self,
        db: Database,
        services: ServiceMap,
        *,
        retry_max: int,
        cancel_retry_max: int,
        backoff: Backoff,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self._db = db
        self._services = services
        self._retry_max = retry_max
        self._cancel_retry_max = cancel_retry_max
        self._backoff = backoff
        self._no_backoff = Backoff(0.0, 1.0, 0.0, sleep=sleep)

    @classmethod
    def from_config(
        cls,
        db: Database,
        services: ServiceMap,
        config: DBConfig,
        *,
        sleep: SleepFn = time.sleep,
    ) -> TenantServiceDriver:
        return cls(
            db,
            services,
            retry_max=config.retry_max,
            cancel_retry_max=config.cancel_retry_max,
            backoff=Backoff.from_config(config, sleep=sleep),
            sleep=sleep,
        )

    @property
    def services(self) -> ServiceMap:
        return self._services

    def update_service_state_raw(
        self, service_type: str, service_id: str, mutate: MutateFn
    ) -> str | None:
        """
        Update the state of the tenant bound to the given service.

        `mutate` is called within a transaction, with the tenant if it exists,
        and returns whether it changed the tenant's service state. It may be
        called multiple times. Returns the new service data if changed.
        """
        snapshot: tuple[str, TenantService] | None = None

        for attempt in range(self._retry_max):
            last = attempt == self._retry_max - 1
            try:
                with self._db.begin() as session:
                    tenant = find_tenant_by_service(session, service_type, service_id)

                    # keep the pre-mutation state around, should we need to
                    # cancel the tenant.
                    if last and tenant is not None and tenant.service is not None:
                        snapshot = (tenant.id, tenant.service)

                    if not mutate(tenant):
                        return None

                    svc = tenant.service if tenant is not None else None
                    if svc is None:
                        msg = (
                            f"service '{service_type}/{service_id}' state update "
                            + "reset the tenant's service"
                        )
                        logger.error(msg)
                        raise ServiceStateInvariantError(msg)

                    return svc.data

            except Exception as e:
                if not is_recoverable(e):
                    raise

                if last:
                    logger.error(
                        f"service '{service_type}/{service_id}' state update: "
                        + f"{e}; no retries left"
                    )
                    break

                logger.debug(
                    f"service '{service_type}/{service_id}' state update: {e}; "
                    + f"{self._retry_max - attempt - 1} retries left"
                )
                self._backoff.wait(attempt)

        self._cancel_on_exhaustion(service_type, service_id, snapshot)

        msg = (
            f"unable to update service '{service_type}/{service_id}' state "
            + f"after {self._retry_max} attempts"
        )
        raise TenantServiceStateError(msg)

    def update_service_state(
        self, service_type: str, service_id: str, update: UpdateFn
    ) -> str | None:
        """
        Update the state of the tenant bound to the given service.

        Missing, unbound, or archived tenants are left untouched.
        """

        def _mutate(tenant: Tenant | None) -> bool:
            if tenant is None or tenant.archived:
                return False

            svc = tenant.service
            if svc is None:
                return False

            data = update(tenant.id, svc)
            if data is None:
                return False

            tenant.service_data = data
            return True

        return self.update_service_state_raw(service_type, service_id, _mutate)

    def _archive(
        self,
        *,
        tenant_id: str | None = None,
        service: tuple[str, str] | None = None,
    ) -> tuple[str, TenantService | None] | None:
        assert tenant_id is not None or service is not None

        def _do(session: Session) -> tuple[str, TenantService | None] | None:
            if tenant_id is not None:
                tenant = session.get(Tenant, tenant_id)
            else:
                assert service is not None
                tenant = find_tenant_by_service(session, *service)

            if tenant is None or tenant.archived:
                return None

            tenant.archived = True
            return (tenant.id, tenant.service)

        return retry_transaction(
            self._db,
            _do,
            retry_max=self._cancel_retry_max,
            backoff=self._no_backoff,
            what=f"cancel tenant '{tenant_id or service}'",
        )

    def _notify_canceled(self, tenant_id: str, service: TenantService) -> None:
        svc = self._services.find(service.type, BuildCanceledService)
        if svc is None:
            return

        try:
            svc.build_canceled(tenant_id, service)
        except Exception:
            logger.exception(
                f"service '{service.type}' failed canceled notification "
                + f"for tenant '{tenant_id}'"
            )

    def _cancel_on_exhaustion(
        self,
        service_type: str,
        service_id: str,
        snapshot: tuple[str, TenantService] | None,
    ) -> None:
        try:
            if snapshot is not None:
                res = self._archive(tenant_id=snapshot[0])
            else:
                res = self._archive(service=(service_type, service_id))
        except Exception as e:
            logger.error(
                f"unable to cancel tenant of '{service_type}/{service_id}': {e}"
            )
            return

        if res is None:
            return

        tenant_id, service = res
        logger.warning(f"canceled tenant '{tenant_id}' on service state update failure")

        service = snapshot[1] if snapshot is not None else service
        if service is not None:
            self._notify_canceled(tenant_id, service)

    def cancel_tenant(self, tenant_id: str) -> TenantService | None:
        """
        Cancel a tenant, notifying its service.

        Missing or already archived tenants are left alone, without notifying.
        Returns the tenant's service, if the tenant was canceled and has one.
        """
        res = self._archive(tenant_id=tenant_id)
        if res is None:
            logger.debug(f"tenant '{tenant_id}' missing or already canceled")
            return None

        # the transaction is done and its connection released by now, so the
        # service may take its time.
        _, service = res
        logger.info(f"canceled tenant '{tenant_id}'")
        if service is not None:
            self._notify_canceled(tenant_id, service)
        return service

    def notify_queued(
        self,
        tenant_id: str,
        service: TenantService,
        builds: list[BuildInfo],
        initial_state: BuildState | None,
        hints: BuildQueuedHints,
    ) -> str | None:
        svc = self._services.find(service.type, BuildQueuedService)
        if svc is None or not builds:
            return None

        try:
            fn = svc.build_queued(tenant_id, service, builds, initial_state, hints)
        except Exception:
            logger.exception(f"service '{service.type}' failed queued notification")
            return None

        return self.update_service_state(service.type, service.id, fn) if fn else None

    def notify_building(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> str | None:
        svc = self._services.find(service.type, BuildBuildingService)
        if svc is None:
            return None

        try:
            fn = svc.build_building(tenant_id, service, build)
        except Exception:
            logger.exception(f"service '{service.type}' failed building notification")
            return None

        return self.update_service_state(service.type, service.id, fn) if fn else None

    def notify_built(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> str | None:
        svc = self._services.find(service.type, BuildBuiltService)
        if svc is None:
            return None

        try:
            fn = svc.build_built(tenant_id, service, build)
        except Exception:
            logger.exception(f"service '{service.type}' failed built notification")
            return None

        return self.update_service_state(service.type, service.id, fn) if fn else None
