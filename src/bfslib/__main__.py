# BFS library - command line interface
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

import logging
from pathlib import Path

import click

from bfslib.cmds import Ctx, pass_ctx
from bfslib.cmds.builds import cmd_build
from bfslib.cmds.config import cmd_config
from bfslib.cmds.db import cmd_db
from bfslib.cmds.tenants import cmd_service, cmd_tenant
from bfslib.logger import logger, set_debug_logging, setup_logging

_bfs_help_message = """Build Farm Service

Operates on the build farm's state, allowing the operator to list builds,
force rebuilds, and cancel tenants, amongst other things.

See subcommands' descriptions for more information.
"""


@click.group(help=_bfs_help_message)
@click.option(
    "-d",
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        path_type=Path,
    ),
    required=False,
    help="Specify bfs config file (defaults to BFS_CONFIG)",
)
@pass_ctx
def main(ctx: Ctx, debug: bool, config_path: Path | None) -> None:
    setup_logging()
    if debug:
        set_debug_logging()

    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.CRITICAL)

    logger.debug(f"config path: {config_path}")
    ctx.config_path = config_path


main.add_command(cmd_build)
main.add_command(cmd_config)
main.add_command(cmd_db)
main.add_command(cmd_service)
main.add_command(cmd_tenant)

if __name__ == "__main__":
    main()
