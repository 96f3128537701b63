# BFS library - logging
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

# pyright: reportExplicitAny=false

import logging
import logging.config
import os
from copy import deepcopy
from typing import Any

import uvicorn.config

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# rotate the log file at 10 MiB, keeping one old file around.
_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024

# third-party loggers that are too chatty at our debug level.
_QUIET_LOGGERS = ["sqlalchemy.engine", "httpx", "httpcore"]


def _debug() -> bool:
    return bool(os.getenv("BFS_DEBUG"))


def _level_name() -> str:
    return logging.getLevelName(logging.DEBUG if _debug() else logging.INFO)


def _logging_config(level: str, log_file: str | None) -> dict[str, Any]:
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "level": level,
            "class": "logging.StreamHandler",
            "formatter": "colorized",
        },
    }
    if log_file:
        handlers["file"] = {
            "level": "DEBUG",
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "plain",
            "filename": log_file,
            "maxBytes": _LOG_FILE_MAX_BYTES,
            "backupCount": 1,
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "colorized": {
                "()": "uvicorn.logging.ColourizedFormatter",
                "format": "%(levelprefix)s %(asctime)s [%(name)s] %(message)s",
                "datefmt": DATE_FORMAT,
            },
            "plain": {
                "format": "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                "datefmt": DATE_FORMAT,
            },
        },
        "handlers": handlers,
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        "root": {
            "level": level,
            "handlers": list(handlers.keys()),
        },
    }


def setup_logging(*, log_file: str | None = None) -> None:
    """
    Log to the console and, optionally, to a rotating file.

    The log file defaults to `BFS_LOG_FILE`, if set. Debug logging is enabled
    by setting `BFS_DEBUG`.
    """
    log_file = log_file or os.getenv("BFS_LOG_FILE")
    logging.config.dictConfig(_logging_config(_level_name(), log_file))


def set_debug_logging() -> None:
    """Set debug logging for the build farm service."""
    logger.setLevel(logging.DEBUG)


def uvicorn_logging_config() -> dict[str, Any]:
    """Obtain uvicorn's logging config, with our format and level."""
    level = _level_name()
    cfg = deepcopy(uvicorn.config.LOGGING_CONFIG)

    cfg["formatters"]["default"]["fmt"] = "%(levelprefix)s %(asctime)s %(message)s"
    cfg["formatters"]["default"]["datefmt"] = DATE_FORMAT
    cfg["formatters"]["access"]["fmt"] = (
        "%(levelprefix)s %(asctime)s %(client_addr)s "
        + '"%(request_line)s" %(status_code)s'
    )
    cfg["formatters"]["access"]["datefmt"] = DATE_FORMAT
    for handler in ("default", "access"):
        cfg["handlers"][handler]["level"] = level
    return cfg


# application logger
#
logger = logging.getLogger("bfs")
