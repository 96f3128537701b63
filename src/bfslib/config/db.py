# BFS library - config - database
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

from typing import Annotated, ClassVar

import pydantic


class DBConfig(pydantic.BaseModel):
    model_config: ClassVar[pydantic.ConfigDict] = pydantic.ConfigDict(
        populate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )

    url: str
    echo: bool = pydantic.Field(default=False)
    pool_size: Annotated[int, pydantic.Field(alias="pool-size", default=5, gt=0)]

    # number of attempts for a transaction failing on recoverable errors.
    retry_max: Annotated[int, pydantic.Field(alias="retry-max", default=10, gt=0)]
    # number of attempts when archiving a tenant, without backing off.
    cancel_retry_max: Annotated[
        int, pydantic.Field(alias="cancel-retry-max", default=10, gt=0)
    ]

    # backoff between retries, in seconds.
    backoff: Annotated[float, pydantic.Field(default=0.1, ge=0)]
    backoff_factor: Annotated[
        float, pydantic.Field(alias="backoff-factor", default=1.5, ge=1)
    ]
    backoff_max: Annotated[
        float, pydantic.Field(alias="backoff-max", default=5.0, ge=0)
    ]
