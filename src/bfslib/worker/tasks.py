# BFS library - worker - tasks
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

import pydantic

from bfslib.core.mgr import mgr_init
from bfslib.worker.celery import celery_app, logger


class RequeueForcedTaskResponse(pydantic.BaseModel):
    requeued: int


class ExpireBuildsTaskResponse(pydantic.BaseModel):
    outdated: int
    expired: int


class ReconcileServicesTaskResponse(pydantic.BaseModel):
    reconciled: int


class CancelTenantTaskResponse(pydantic.BaseModel):
    tenant_id: str
    # whether the tenant was bound to a service when canceled.
    unbound: bool


@celery_app.task(pydantic=True)
def requeue_forced() -> RequeueForcedTaskResponse:
    mgr = mgr_init()
    n = mgr.builds.requeue_forced()
    logger.debug(f"requeued {n} forced builds")
    return RequeueForcedTaskResponse(requeued=n)


@celery_app.task(pydantic=True)
def expire_builds() -> ExpireBuildsTaskResponse:
    mgr = mgr_init()
    res = ExpireBuildsTaskResponse(
        outdated=mgr.builds.requeue_outdated(),
        expired=mgr.builds.expire_building(),
    )
    logger.debug(f"requeued {res.outdated} outdated, {res.expired} expired builds")
    return res


@celery_app.task(pydantic=True)
def reconcile_services() -> ReconcileServicesTaskResponse:
    mgr = mgr_init()
    n = mgr.builds.reconcile_services()
    logger.debug(f"reconciled {n} tenant services")
    return ReconcileServicesTaskResponse(reconciled=n)


@celery_app.task(pydantic=True)
def cancel_tenant(tenant_id: str) -> CancelTenantTaskResponse:
    logger.info(f"cancel tenant '{tenant_id}'")
    mgr = mgr_init()
    svc = mgr.builds.cancel_tenant(tenant_id)
    return CancelTenantTaskResponse(tenant_id=tenant_id, unbound=svc is not None)
