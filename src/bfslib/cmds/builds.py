# BFS library - commands - builds
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

import errno
import functools
import logging
import sys
from collections.abc import Callable
from typing import Any

import click
import rich.box
from rich.table import Table

from bfslib.builds.mgr import ForceConflictError, InvalidForceRequestError
from bfslib.builds.types import BuildID, BuildState
from bfslib.cmds import console, pass_logger, pass_mgr, update_ctx
from bfslib.core.mgr import Mgr
from bfslib.errors import BFSError, ExpiredBuildError

# pyright: reportUnusedParameter=false, reportExplicitAny=false


def build_id_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Define shared options identifying a build."""

    @click.option("--tenant", type=str, required=True, metavar="ID")
    @click.option("--package", "package_name", type=str, required=True)
    @click.option("--version", "package_version", type=str, required=True)
    @click.option("--target", type=str, required=True)
    @click.option("--target-config", type=str, required=True, metavar="NAME")
    @click.option(
        "--package-config",
        type=str,
        required=False,
        default="default",
        show_default=True,
        metavar="NAME",
    )
    @click.option("--toolchain", "toolchain_name", type=str, required=True)
    @click.option("--toolchain-version", type=str, required=True)
    @functools.wraps(func)
    def wrapper(
        *args: Any,
        tenant: str,
        package_name: str,
        package_version: str,
        target: str,
        target_config: str,
        package_config: str,
        toolchain_name: str,
        toolchain_version: str,
        **kwargs: Any,
    ) -> Any:
        build_id = BuildID(
            tenant=tenant,
            package_name=package_name,
            package_version=package_version,
            target=target,
            target_config_name=target_config,
            package_config_name=package_config,
            toolchain_name=toolchain_name,
            toolchain_version=toolchain_version,
        )
        return func(*args, build_id=build_id, **kwargs)

    return wrapper


@click.group("build", help="Build related commands")
@update_ctx
def cmd_build() -> None:
    pass


@cmd_build.command("list", help="List known builds")
@click.option("--tenant", type=str, required=False, metavar="ID")
@click.option(
    "--state",
    "state_name",
    type=click.Choice([s.value for s in BuildState], case_sensitive=True),
    required=False,
)
@update_ctx
@pass_logger
@pass_mgr
def cmd_build_list(
    mgr: Mgr, logger: logging.Logger, tenant: str | None, state_name: str | None
) -> None:
    state = BuildState(state_name) if state_name else None
    try:
        lst = mgr.builds.list(tenant_id=tenant, state=state)
    except BFSError as e:
        click.echo(f"error obtaining build list: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    logger.debug(f"obtained {len(lst)} builds")
    if not lst:
        click.echo("no builds found")
        return

    table = Table(show_header=True, show_lines=False, box=rich.box.HORIZONTALS)
    table.add_column("Tenant", justify="left", style="bold cyan", no_wrap=True)
    table.add_column("Package", justify="left", style="magenta")
    table.add_column("Target", justify="left")
    table.add_column("Config", justify="left")
    table.add_column("Toolchain", justify="left")
    table.add_column("State", justify="left", style="bold")
    table.add_column("Force", justify="left")
    table.add_column("Status", justify="left")

    for b in lst:
        table.add_row(
            b.id.tenant,
            f"{b.id.package_name}/{b.id.package_version}",
            b.id.target,
            f"{b.id.target_config_name}/{b.id.package_config_name}",
            f"{b.id.toolchain_name}-{b.id.toolchain_version}",
            b.state.value,
            b.force.value,
            b.status.value if b.status else "-",
        )

    console.print(table)


@cmd_build.command("force", help="Force a build to be rebuilt")
@build_id_options
@click.option(
    "-r",
    "--reason",
    type=str,
    required=True,
    help="Reason for the rebuild",
)
@update_ctx
@pass_logger
@pass_mgr
def cmd_build_force(
    mgr: Mgr, logger: logging.Logger, build_id: BuildID, reason: str
) -> None:
    try:
        force = mgr.builds.force(build_id, reason)
    except InvalidForceRequestError as e:
        click.echo(f"invalid request: {e}", err=True)
        sys.exit(errno.EINVAL)
    except ExpiredBuildError as e:
        click.echo(f"{e}", err=True)
        sys.exit(errno.ENOENT)
    except ForceConflictError as e:
        click.echo(f"{e}", err=True)
        sys.exit(errno.EBUSY)
    except BFSError as e:
        click.echo(f"error forcing build: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    logger.debug(f"forced '{build_id}': {force.value}")
    click.echo(f"build '{build_id}' is {force.value}")


@cmd_build.command("rebuild", help="Request a build to be rebuilt")
@build_id_options
@update_ctx
@pass_logger
@pass_mgr
def cmd_build_rebuild(mgr: Mgr, logger: logging.Logger, build_id: BuildID) -> None:
    try:
        state = mgr.builds.rebuild(build_id)
    except BFSError as e:
        click.echo(f"error requesting rebuild: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    if state is None:
        click.echo(f"build '{build_id}' not found", err=True)
        sys.exit(errno.ENOENT)

    logger.debug(f"rebuild '{build_id}': {state.value}")
    click.echo(f"build '{build_id}' is {state.value}")


@cmd_build.command("requeue", help="Requeue forced builds")
@update_ctx
@pass_mgr
def cmd_build_requeue(mgr: Mgr) -> None:
    try:
        n = mgr.builds.requeue_forced()
    except BFSError as e:
        click.echo(f"error requeueing builds: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    click.echo(f"requeued {n} builds")


@cmd_build.command("expire", help="Requeue outdated builds and lost results")
@update_ctx
@pass_mgr
def cmd_build_expire(mgr: Mgr) -> None:
    try:
        outdated = mgr.builds.requeue_outdated()
        expired = mgr.builds.expire_building()
    except BFSError as e:
        click.echo(f"error expiring builds: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    click.echo(f"requeued {outdated} outdated builds, {expired} timed out builds")
