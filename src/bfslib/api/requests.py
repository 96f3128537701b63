# BFS library - api - requests
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

from bfslib.builds.types import BuildID


class ForceRequest(pydantic.BaseModel):
    """Requests a build to be rebuilt, regardless of its current state."""

    build_id: BuildID
    reason: str
