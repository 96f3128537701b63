# BFS library - commands - database
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
import sys

import click

from bfslib.cmds import pass_mgr, update_ctx
from bfslib.core.mgr import Mgr
from bfslib.errors import BFSError


@click.group("db", help="Database related commands")
@update_ctx
def cmd_db() -> None:
    pass


@cmd_db.command("init", help="Create the database's tables")
@update_ctx
@pass_mgr
def cmd_db_init(mgr: Mgr) -> None:
    try:
        mgr.db.create_all()
    except BFSError as e:
        click.echo(f"error initializing database: {e}", err=True)
        sys.exit(errno.ENOTRECOVERABLE)

    click.echo("database initialized")
