# BFS library - api - responses
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

import pydantic

from bfslib.builds.types import BuildState, ForceState


class BaseErrorModel(pydantic.BaseModel):
    detail: str


class ForceResponse(pydantic.BaseModel):
    force: ForceState
    # seconds after which the rebuild is expected to have been picked up.
    timeout: int


class RebuildResponse(pydantic.BaseModel):
    state: BuildState | None
