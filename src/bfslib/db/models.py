# BFS library - db - models
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

from __future__ import annotations

import datetime
import enum
from datetime import datetime as dt
from typing import Any, override

import pydantic
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from bfslib.builds.config import BuildClassExpr, BuildConstraint
from bfslib.builds.types import (
    BuildID,
    BuildInfo,
    BuildMachine,
    BuildState,
    ForceState,
    OperationResult,
    ResultStatus,
)
from bfslib.tenants.service import TenantService


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [str(member.value) for member in enum_cls]


def _sa_enum(enum_cls: type[enum.Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=_enum_values,
        validate_strings=True,
    )


class UTCDateTime(TypeDecorator[dt]):
    """Timezone-aware datetime, normalized to UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    @override
    def process_bind_param(self, value: dt | None, dialect: Dialect) -> dt | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value.astimezone(datetime.UTC)

    @override
    def process_result_value(self, value: dt | None, dialect: Dialect) -> dt | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value.astimezone(datetime.UTC)


def utcnow() -> dt:
    return dt.now(tz=datetime.UTC)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenant"
    __table_args__ = (UniqueConstraint("service_type", "service_id"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    private: Mapped[bool] = mapped_column(Boolean, default=False)
    interactive: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    creation_timestamp: Mapped[dt] = mapped_column(UTCDateTime(), default=utcnow)
    # last time a queued notification batch was sent for this tenant.
    queued_timestamp: Mapped[dt | None] = mapped_column(UTCDateTime(), nullable=True)

    service_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    service_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    service_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    packages: Mapped[list[Package]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan"
    )

    @property
    def service(self) -> TenantService | None:
        if self.service_type is None or self.service_id is None:
            return None
        return TenantService(
            type=self.service_type, id=self.service_id, data=self.service_data
        )

    def set_service(self, service: TenantService | None) -> None:
        self.service_type = service.type if service else None
        self.service_id = service.id if service else None
        self.service_data = service.data if service else None


class PackageConfig(pydantic.BaseModel):
    """A named package build configuration, possibly overriding the package's."""

    name: str
    builds: list[BuildClassExpr] = pydantic.Field(default=[])
    constraints: list[BuildConstraint] = pydantic.Field(default=[])


class Package(Base):
    __tablename__ = "package"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(255), primary_key=True)
    buildable: Mapped[bool] = mapped_column(Boolean, default=True)

    raw_builds: Mapped[list[dict[str, Any]]] = mapped_column(
        "builds", JSON, default=list
    )
    raw_constraints: Mapped[list[dict[str, Any]]] = mapped_column(
        "build_constraints", JSON, default=list
    )
    raw_configs: Mapped[list[dict[str, Any]]] = mapped_column(
        "build_configs", JSON, default=list
    )

    __table_args__ = (
        ForeignKeyConstraint(["tenant_id"], ["tenant.id"], ondelete="CASCADE"),
    )

    tenant: Mapped[Tenant] = relationship(back_populates="packages")

    @property
    def builds(self) -> list[BuildClassExpr]:
        return [BuildClassExpr.model_validate(e) for e in self.raw_builds]

    @builds.setter
    def builds(self, exprs: list[BuildClassExpr]) -> None:
        self.raw_builds = [e.model_dump(mode="json") for e in exprs]

    @property
    def constraints(self) -> list[BuildConstraint]:
        return [BuildConstraint.model_validate(c) for c in self.raw_constraints]

    @constraints.setter
    def constraints(self, constraints: list[BuildConstraint]) -> None:
        self.raw_constraints = [c.model_dump(mode="json") for c in constraints]

    @property
    def configs(self) -> list[PackageConfig]:
        """Package build configurations, with an implicit 'default' if none."""
        configs = [PackageConfig.model_validate(c) for c in self.raw_configs]
        return configs if configs else [PackageConfig(name="default")]

    @configs.setter
    def configs(self, configs: list[PackageConfig]) -> None:
        self.raw_configs = [c.model_dump(mode="json") for c in configs]

    def find_config(self, name: str) -> PackageConfig | None:
        return next((c for c in self.configs if c.name == name), None)

    def effective_builds(self, config: PackageConfig) -> list[BuildClassExpr]:
        return config.builds if config.builds else self.builds

    def effective_constraints(self, config: PackageConfig) -> list[BuildConstraint]:
        return config.constraints if config.constraints else self.constraints


class Build(Base):
    __tablename__ = "build"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    package_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    package_version: Mapped[str] = mapped_column(String(255), primary_key=True)
    target: Mapped[str] = mapped_column(String(255), primary_key=True)
    target_config_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    package_config_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    toolchain_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    toolchain_version: Mapped[str] = mapped_column(String(255), primary_key=True)

    state: Mapped[BuildState] = mapped_column(_sa_enum(BuildState, "build_state"))
    force: Mapped[ForceState] = mapped_column(
        _sa_enum(ForceState, "force_state"), default=ForceState.unforced
    )
    timestamp: Mapped[dt] = mapped_column(UTCDateTime(), default=utcnow)
    completion_timestamp: Mapped[dt | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    status: Mapped[ResultStatus | None] = mapped_column(
        _sa_enum(ResultStatus, "result_status"), nullable=True
    )

    raw_machine: Mapped[dict[str, Any] | None] = mapped_column(
        "machine", JSON, nullable=True
    )
    raw_auxiliary_machines: Mapped[list[dict[str, Any]]] = mapped_column(
        "auxiliary_machines", JSON, default=list
    )
    raw_results: Mapped[list[dict[str, Any]]] = mapped_column(
        "results", JSON, default=list
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "package_name", "package_version"],
            ["package.tenant_id", "package.name", "package.version"],
            ondelete="CASCADE",
        ),
    )

    @classmethod
    def key(cls, build_id: BuildID) -> tuple[str, ...]:
        """Obtain the primary key for a given build id."""
        return (
            build_id.tenant,
            build_id.package_name,
            build_id.package_version,
            build_id.target,
            build_id.target_config_name,
            build_id.package_config_name,
            build_id.toolchain_name,
            build_id.toolchain_version,
        )

    @property
    def build_id(self) -> BuildID:
        return BuildID(
            tenant=self.tenant_id,
            package_name=self.package_name,
            package_version=self.package_version,
            target=self.target,
            target_config_name=self.target_config_name,
            package_config_name=self.package_config_name,
            toolchain_name=self.toolchain_name,
            toolchain_version=self.toolchain_version,
        )

    @property
    def machine(self) -> BuildMachine | None:
        if self.raw_machine is None:
            return None
        return BuildMachine.model_validate(self.raw_machine)

    @machine.setter
    def machine(self, machine: BuildMachine | None) -> None:
        self.raw_machine = machine.model_dump(mode="json") if machine else None

    @property
    def auxiliary_machines(self) -> list[BuildMachine]:
        return [BuildMachine.model_validate(m) for m in self.raw_auxiliary_machines]

    @auxiliary_machines.setter
    def auxiliary_machines(self, machines: list[BuildMachine]) -> None:
        self.raw_auxiliary_machines = [m.model_dump(mode="json") for m in machines]

    @property
    def results(self) -> list[OperationResult]:
        return [OperationResult.model_validate(r) for r in self.raw_results]

    @results.setter
    def results(self, results: list[OperationResult]) -> None:
        self.raw_results = [r.model_dump(mode="json") for r in results]

    def info(self) -> BuildInfo:
        """Obtain a detached snapshot of this build."""
        return BuildInfo(
            id=self.build_id,
            state=self.state,
            force=self.force,
            timestamp=self.timestamp,
            completion_timestamp=self.completion_timestamp,
            status=self.status,
            machine=self.machine,
            auxiliary_machines=self.auxiliary_machines,
            results=self.results,
        )
