# BFS library - tenants - service notifications
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

"""
Third-party service notifications.

A tenant may be bound to a third-party service (e.g., a CI check-run mirror),
identified by its type and an id unique within that type, and carrying an
opaque state blob only the service knows how to interpret.

A service implements any subset of the capabilities below. Each notification
returns an optional update function, which the caller re-invokes for every
attempt at persisting the service's new state, and which returns the new
state or `None` if there is nothing to update. The notification itself is only
ever called once per event.
"""

from __future__ import annotations

import abc
from collections.abc import Callable
from typing import TypeVar

import pydantic

from bfslib.builds.types import BuildInfo, BuildQueuedHints, BuildState
from bfslib.tenants import logger as parent_logger

logger = parent_logger.getChild("service")


class TenantService(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    type: str
    id: str
    data: str | None = pydantic.Field(default=None)


# (tenant id, current service state) -> new service data, if any
UpdateFn = Callable[[str, TenantService], str | None]


class ServiceBase(abc.ABC):  # noqa: B024
    """Base for all tenant service implementations."""

    pass


class BuildQueuedService(ServiceBase):
    @abc.abstractmethod
    def build_queued(
        self,
        tenant_id: str,
        service: TenantService,
        builds: list[BuildInfo],
        initial_state: BuildState | None,
        hints: BuildQueuedHints,
    ) -> UpdateFn | None:
        """
        Notify about builds being queued.

        `initial_state` is `None` for new builds, `building` for interrupted
        builds, and `built` for rebuilds. All builds in a batch share it.
        """
        ...


class BuildBuildingService(ServiceBase):
    @abc.abstractmethod
    def build_building(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> UpdateFn | None: ...


class BuildBuiltService(ServiceBase):
    @abc.abstractmethod
    def build_built(
        self, tenant_id: str, service: TenantService, build: BuildInfo
    ) -> UpdateFn | None: ...


class BuildCanceledService(ServiceBase):
    @abc.abstractmethod
    def build_canceled(self, tenant_id: str, service: TenantService) -> None:
        """Notify the tenant has been canceled, no more notifications follow."""
        ...


class ServiceReconciler(ServiceBase):
    @abc.abstractmethod
    def reconcile(self, tenant_id: str, service: TenantService) -> UpdateFn | None:
        """Retry pushing any state not yet synchronized with the remote."""
        ...


_S = TypeVar("_S", bound=ServiceBase)


class ServiceMap:
    """Maps service types to their implementations."""

    _services: dict[str, ServiceBase]

    def __init__(self) -> None:
        self._services = {}

    def register(self, service_type: str, service: ServiceBase) -> None:
        if service_type in self._services:
            logger.warning(f"replacing service implementation for '{service_type}'")
        self._services[service_type] = service

    def get(self, service_type: str) -> ServiceBase | None:
        return self._services.get(service_type)

    def find(self, service_type: str, capability: type[_S]) -> _S | None:
        """Obtain a service's implementation, if it has the given capability."""
        svc = self._services.get(service_type)
        if svc is None:
            logger.debug(f"unknown service type '{service_type}'")
            return None
        return svc if isinstance(svc, capability) else None

    def types(self) -> list[str]:
        return list(self._services.keys())
