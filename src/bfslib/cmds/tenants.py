# BFS library - commands - tenants
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
import logging
import sys

import click

from bfslib.cmds import pass_logger, pass_mgr, update_ctx
from bfslib.core.mgr import Mgr
from bfslib.errors import BFSError
from bfslib.tenants.driver import TenantServiceStateError

# pyright: reportUnusedParameter=false


@click.group("tenant", help="Tenant related commands")
@update_ctx
def cmd_tenant() -> None:
    pass


@cmd_tenant.command("show", help="Show a tenant")
@click.argument("tenant_id", type=str, metavar="ID", required=True)
@update_ctx
@pass_mgr
def cmd_tenant_show(mgr: Mgr, tenant_id: str) -> None:
    try:
        info = mgr.tenants.get(tenant_id)
    except BFSError as e:
        click.echo(f"error obtaining tenant: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    if info is None:
        click.echo(f"tenant '{tenant_id}' not found", err=True)
        sys.exit(errno.ENOENT)

    click.echo(f"       tenant: {info.id}")
    click.echo(f"     archived: {info.archived}")
    click.echo(f"      private: {info.private}")
    click.echo(f"      created: {info.creation_timestamp}")
    click.echo(f"       queued: {info.queued_timestamp or '-'}")
    if info.service:
        click.echo(f"      service: {info.service.type}/{info.service.id}")


@cmd_tenant.command("cancel", help="Cancel a tenant, notifying its service")
@click.argument("tenant_id", type=str, metavar="ID", required=True)
@update_ctx
@pass_logger
@pass_mgr
def cmd_tenant_cancel(mgr: Mgr, logger: logging.Logger, tenant_id: str) -> None:
    try:
        svc = mgr.builds.cancel_tenant(tenant_id)
    except TenantServiceStateError as e:
        click.echo(f"{e}", err=True)
        sys.exit(errno.EAGAIN)
    except BFSError as e:
        click.echo(f"error canceling tenant: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    logger.debug(f"canceled tenant '{tenant_id}', service: {svc}")
    click.echo(f"tenant '{tenant_id}' canceled")


@click.group("service", help="Tenant service related commands")
@update_ctx
def cmd_service() -> None:
    pass


@cmd_service.command("reconcile", help="Push unsynchronized service state")
@update_ctx
@pass_mgr
def cmd_service_reconcile(mgr: Mgr) -> None:
    try:
        n = mgr.builds.reconcile_services()
    except BFSError as e:
        click.echo(f"error reconciling services: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    click.echo(f"reconciled {n} tenants")
