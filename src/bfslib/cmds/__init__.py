# BFS library - commands
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
from collections.abc import Callable
from copy import copy
from functools import wraps
from pathlib import Path
from typing import Concatenate, ParamSpec, TypeVar

import click
from rich.console import Console

from bfslib.config.config import config_init
from bfslib.core.mgr import Mgr, mgr_init
from bfslib.errors import BFSError
from bfslib.logger import logger as parent_logger

logger = parent_logger.getChild("cmds")

console = Console()


class Ctx:
    """State shared down the command tree."""

    config_path: Path | None
    logger: logging.Logger | None

    def __init__(self) -> None:
        self.config_path = None
        self.logger = None

    def for_command(self, name: str) -> "Ctx":
        ctx = copy(self)
        ctx.logger = (self.logger or logger).getChild(name)
        return ctx


pass_ctx = click.make_pass_decorator(Ctx, ensure=True)

R = TypeVar("R")
P = ParamSpec("P")


def _require_ctx(name: str) -> Ctx:
    ctx = click.get_current_context().find_object(Ctx)
    if ctx is None:
        logger.error(f"command '{name}' run without a context")
        sys.exit(errno.ENOTRECOVERABLE)
    return ctx


def update_ctx(f: Callable[P, R]) -> Callable[P, R]:
    """Give the command its own context, with a logger named after it."""

    @wraps(f)
    def inner(*args: P.args, **kwargs: P.kwargs) -> R:
        click_ctx = click.get_current_context()
        ctx = click_ctx.find_object(Ctx)
        if ctx is not None:
            click_ctx.obj = ctx.for_command(f.__name__)
        return f(*args, **kwargs)

    return inner


def pass_logger(f: Callable[Concatenate[logging.Logger, P], R]) -> Callable[P, R]:
    @wraps(f)
    def inner(*args: P.args, **kwargs: P.kwargs) -> R:
        ctx = _require_ctx(f.__name__)
        cmd_logger = ctx.logger or logger.getChild(f.__name__)
        return f(cmd_logger, *args, **kwargs)

    return inner


def pass_mgr(f: Callable[Concatenate[Mgr, P], R]) -> Callable[P, R]:
    """
    Load the config and pass the manager to the command.

    Exits with `EINVAL` if either can't be set up.
    """

    @wraps(f)
    def inner(*args: P.args, **kwargs: P.kwargs) -> R:
        ctx = _require_ctx(f.__name__)
        try:
            _ = config_init(path=ctx.config_path)
            mgr = mgr_init()
        except BFSError as e:
            click.echo(f"error setting up: {e}", err=True)
            sys.exit(errno.EINVAL)
        return f(mgr, *args, **kwargs)

    return inner
