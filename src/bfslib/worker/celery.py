# BFS library - worker - celery
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

import logging
import os
from typing import Any

from celery import Celery, signals

from bfslib.config.config import Config, config_init
from bfslib.errors import ConfigError

celery_app = Celery(__name__, include=["bfslib.worker.tasks"])

logger = celery_app.log.get_default_logger(__name__)


def _beat_schedule(config: Config) -> dict[str, dict[str, Any]]:
    return {
        "requeue-forced": {
            "task": "bfslib.worker.tasks.requeue_forced",
            "schedule": config.build.requeue_interval,
        },
        "expire-builds": {
            "task": "bfslib.worker.tasks.expire_builds",
            "schedule": config.build.requeue_interval,
        },
        "reconcile-services": {
            "task": "bfslib.worker.tasks.reconcile_services",
            "schedule": config.build.reconcile_interval,
        },
    }


def _configure() -> None:
    """
    Configure the app from the BFS config, if one is available.

    Clients that only send tasks may import the app without a config. Workers
    run with `BFS_CONFIG` set, and fail to start on a bad config.
    """
    if "BFS_CONFIG" not in os.environ:
        logger.warning("BFS_CONFIG not set, celery app left unconfigured")
        return

    try:
        config = config_init()
    except ConfigError as e:
        logger.error(f"unable to configure celery app: {e}")
        raise

    celery_app.conf.update(
        broker_url=config.broker_url,
        result_backend=config.results_backend_url,
        beat_schedule=_beat_schedule(config),
    )


@signals.after_setup_task_logger.connect
def _task_logger_level(**_kwargs: Any) -> None:
    # tasks log through the 'bfs' tree, which celery doesn't set up.
    if os.getenv("BFS_DEBUG"):
        logging.getLogger("bfs").setLevel(logging.DEBUG)


_configure()
