# BFS library - tenants - ci tenants
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
import uuid
from datetime import datetime as dt
from typing import override

import pydantic
from sqlalchemy.orm import Session

from bfslib.builds.config import BuildClassExpr, BuildConstraint
from bfslib.db.engine import Database
from bfslib.db.models import Package, PackageConfig, Tenant, utcnow
from bfslib.db.retry import Backoff, retry_transaction
from bfslib.errors import BFSError, ExpiredBuildError
from bfslib.tenants import logger as parent_logger
from bfslib.tenants.driver import find_tenant_by_service
from bfslib.tenants.service import TenantService

logger = parent_logger.getChild("ci")


class DuplicateTenantError(BFSError):
    @override
    def __str__(self) -> str:
        return "Duplicate tenant" + (f": {self.msg}" if self.msg else "")


class DuplicateTenantMode(str, enum.Enum):
    #
    # fail if a tenant is already bound to the service.
    #
    fail = "fail"
    #
    # return the existing tenant, unless it has been archived.
    #
    ignore = "ignore"
    #
    # archive the existing tenant, and create a new one.
    #
    replace = "replace"


class TenantInfo(pydantic.BaseModel):
    id: str
    archived: bool
    private: bool
    interactive: str | None
    creation_timestamp: dt
    queued_timestamp: dt | None
    service: TenantService | None

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> TenantInfo:
        return TenantInfo(
            id=tenant.id,
            archived=tenant.archived,
            private=tenant.private,
            interactive=tenant.interactive,
            creation_timestamp=tenant.creation_timestamp,
            queued_timestamp=tenant.queued_timestamp,
            service=tenant.service,
        )


class TenantsMgr:
    """Admits, cancels, and looks up CI tenants."""

    _db: Database
    _retry_max: int
    _backoff: Backoff

    def __init__(self, db: Database, *, retry_max: int, backoff: Backoff) -> None:
        self._db = db
        self._retry_max = retry_max
        self._backoff = backoff

    def create(
        self,
        service: TenantService | None,
        *,
        private: bool = False,
        interactive: str | None = None,
        duplicate: DuplicateTenantMode = DuplicateTenantMode.fail,
        tenant_id: str | None = None,
    ) -> str:
        """Create a new tenant, optionally bound to a service."""

        def _do(session: Session) -> str:
            if service is not None:
                existing = find_tenant_by_service(session, service.type, service.id)
                if existing is not None:
                    if (
                        duplicate == DuplicateTenantMode.ignore
                        and not existing.archived
                    ):
                        logger.debug(
                            f"tenant '{existing.id}' already bound to service "
                            + f"'{service.type}/{service.id}'"
                        )
                        return existing.id

                    if (
                        duplicate == DuplicateTenantMode.fail
                        and not existing.archived
                    ):
                        msg = (
                            f"service '{service.type}/{service.id}' already bound "
                            + f"to tenant '{existing.id}'"
                        )
                        logger.info(msg)
                        raise DuplicateTenantError(msg)

                    # unbind the service, so that it can be bound anew.
                    logger.info(f"archiving tenant '{existing.id}', replaced")
                    existing.archived = True
                    existing.set_service(None)
                    session.flush()

            tenant = Tenant(
                id=tenant_id or str(uuid.uuid4()),
                private=private,
                interactive=interactive,
                archived=False,
                creation_timestamp=utcnow(),
                queued_timestamp=None,
            )
            tenant.set_service(service)
            session.add(tenant)
            return tenant.id

        new_id = retry_transaction(
            self._db,
            _do,
            retry_max=self._retry_max,
            backoff=self._backoff,
            what="create tenant",
        )
        logger.info(f"created tenant '{new_id}'")
        return new_id

    def cancel(self, service_type: str, service_id: str) -> TenantService | None:
        """
        Cancel the tenant bound to a service, on the service's request.

        The tenant is archived and unbound from the service, which is not
        notified. Returns the unbound service state, if there was a tenant.
        """

        def _do(session: Session) -> TenantService | None:
            tenant = find_tenant_by_service(session, service_type, service_id)
            if tenant is None:
                return None

            svc = tenant.service
            tenant.archived = True
            tenant.set_service(None)
            return svc

        return retry_transaction(
            self._db,
            _do,
            retry_max=self._retry_max,
            backoff=self._backoff,
            what=f"cancel service '{service_type}/{service_id}'",
        )

    def find(self, service_type: str, service_id: str) -> TenantInfo | None:
        def _do(session: Session) -> TenantInfo | None:
            tenant = find_tenant_by_service(session, service_type, service_id)
            return TenantInfo.from_tenant(tenant) if tenant is not None else None

        return retry_transaction(
            self._db,
            _do,
            retry_max=self._retry_max,
            backoff=self._backoff,
            what="find tenant",
        )

    def get(self, tenant_id: str) -> TenantInfo | None:
        def _do(session: Session) -> TenantInfo | None:
            tenant = session.get(Tenant, tenant_id)
            return TenantInfo.from_tenant(tenant) if tenant is not None else None

        return retry_transaction(
            self._db,
            _do,
            retry_max=self._retry_max,
            backoff=self._backoff,
            what="get tenant",
        )

    def add_package(
        self,
        tenant_id: str,
        name: str,
        version: str,
        *,
        builds: list[BuildClassExpr] | None = None,
        constraints: list[BuildConstraint] | None = None,
        configs: list[PackageConfig] | None = None,
        buildable: bool = True,
    ) -> None:
        def _do(session: Session) -> None:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None or tenant.archived:
                msg = f"tenant '{tenant_id}' does not exist or is archived"
                logger.info(msg)
                raise ExpiredBuildError(msg)

            pkg = Package(
                tenant_id=tenant_id,
                name=name,
                version=version,
                buildable=buildable,
            )
            pkg.builds = builds or []
            pkg.constraints = constraints or []
            pkg.configs = configs or []
            session.add(pkg)

        _ = retry_transaction(
            self._db,
            _do,
            retry_max=self._retry_max,
            backoff=self._backoff,
            what=f"add package '{name}/{version}'",
        )
        logger.debug(f"added package '{name}/{version}' to tenant '{tenant_id}'")
