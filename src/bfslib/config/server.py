# BFS library - config - server
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

from pathlib import Path

import pydantic


class ServerConfig(pydantic.BaseModel):
    host: str = pydantic.Field(default="0.0.0.0")  # noqa: S104
    port: int = pydantic.Field(default=8080)
    cert: Path | None = pydantic.Field(default=None)
    key: Path | None = pydantic.Field(default=None)
