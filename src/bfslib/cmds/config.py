# BFS library - commands - config
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
from rich.table import Table

from bfslib.builds.config import BuildTargetConfigs
from bfslib.cmds import Ctx, console, pass_ctx, update_ctx
from bfslib.config.config import Config
from bfslib.errors import BFSError


@click.group("config", help="Configuration related commands")
@update_ctx
def cmd_config() -> None:
    pass


@cmd_config.command("check", help="Check the configuration and target configs")
@update_ctx
@pass_ctx
def cmd_config_check(ctx: Ctx) -> None:
    try:
        config = Config.load(path=ctx.config_path)
        target_configs = BuildTargetConfigs.load(config.build.target_configs)
    except BFSError as e:
        click.echo(f"{e}", err=True)
        sys.exit(errno.EINVAL)

    table = Table(show_header=True, show_lines=False, box=None)
    table.add_column("Target", justify="left", style="bold cyan", no_wrap=True)
    table.add_column("Name", justify="left", style="magenta", no_wrap=True)
    table.add_column("Classes", justify="left")
    for c in target_configs.configs:
        table.add_row(c.target, c.name, " ".join(c.classes))

    console.print(table)
    click.echo(
        f"{len(target_configs.configs)} target configs, "
        + f"{len(target_configs.class_inheritance_map)} inherited classes"
    )
