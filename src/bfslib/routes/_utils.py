# BFS library - routes - utilities
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


from typing import Annotated

from fastapi import Depends

from bfslib.api.responses import BaseErrorModel
from bfslib.builds.mgr import BuildsMgr
from bfslib.core.mgr import BFSMgr
from bfslib.routes import logger as parent_logger

logger = parent_logger.getChild("utils")


responses_builds = {
    500: {
        "model": BaseErrorModel,
        "description": "An internal error occurred, please check BFS logs",
    },
}


def get_builds_mgr(mgr: BFSMgr) -> BuildsMgr:
    return mgr.builds


BFSBuildsMgr = Annotated[BuildsMgr, Depends(get_builds_mgr)]
