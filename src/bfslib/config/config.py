# BFS library - config
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

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, ClassVar, NoReturn

import pydantic
import yaml
from fastapi import Depends

from bfslib.config import logger as parent_logger
from bfslib.config.db import DBConfig
from bfslib.config.server import ServerConfig
from bfslib.errors import ConfigError

logger = parent_logger.getChild("config")

_CONFIG_SUFFIXES = (".json", ".yaml", ".yml")


class BuildConfig(pydantic.BaseModel):
    model_config: ClassVar[pydantic.ConfigDict] = pydantic.ConfigDict(
        populate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )

    target_configs: Annotated[Path, pydantic.Field(alias="target-configs")]
    # seconds to wait after a queued notification before handing out tasks.
    queued_notify_delay: Annotated[
        int, pydantic.Field(alias="queued-notify-delay", default=30, ge=0)
    ]
    # seconds since completion before a forced build is queued again.
    forced_rebuild_timeout: Annotated[
        int, pydantic.Field(alias="forced-rebuild-timeout", default=600, gt=0)
    ]
    # seconds after which a built build is rebuilt anyway; never if unset.
    normal_rebuild_timeout: Annotated[
        int | None,
        pydantic.Field(alias="normal-rebuild-timeout", default=None, gt=0),
    ]
    # seconds a build may be building before its results are deemed lost.
    result_timeout: Annotated[
        int, pydantic.Field(alias="result-timeout", default=10800, gt=0)
    ]
    default_underlying_class: Annotated[
        str, pydantic.Field(alias="default-underlying-class", default="default")
    ]
    # periodic worker tasks, in seconds.
    requeue_interval: Annotated[
        float, pydantic.Field(alias="requeue-interval", default=30.0, gt=0)
    ]
    reconcile_interval: Annotated[
        float, pydantic.Field(alias="reconcile-interval", default=60.0, gt=0)
    ]


class GitHubConfig(pydantic.BaseModel):
    model_config: ClassVar[pydantic.ConfigDict] = pydantic.ConfigDict(
        populate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )

    api_url: Annotated[
        str, pydantic.Field(alias="api-url", default="https://api.github.com")
    ]
    timeout: float = pydantic.Field(default=30.0, gt=0)

    # the GitHub App, minting installation access tokens.
    app_id: Annotated[int | None, pydantic.Field(alias="app-id", default=None)]
    private_key: Annotated[
        Path | None, pydantic.Field(alias="private-key", default=None)
    ]
    # seconds; GitHub rejects app tokens valid for longer than 10 minutes.
    jwt_validity: Annotated[
        int, pydantic.Field(alias="jwt-validity", default=600, gt=0, le=600)
    ]
    # webhook events are only accepted if a secret is set.
    webhook_secret: Annotated[
        pydantic.SecretStr | None,
        pydantic.Field(alias="webhook-secret", default=None),
    ]


class Config(pydantic.BaseModel):
    model_config: ClassVar[pydantic.ConfigDict] = pydantic.ConfigDict(
        populate_by_name=True,
        validate_by_alias=True,
        serialize_by_alias=True,
    )

    db: DBConfig
    build: BuildConfig
    server: ServerConfig | None = pydantic.Field(default=None)
    github: GitHubConfig | None = pydantic.Field(default=None)
    broker_url: Annotated[str | None, pydantic.Field(alias="broker-url", default=None)]
    results_backend_url: Annotated[
        str | None, pydantic.Field(alias="results-backend-url", default=None)
    ]

    @classmethod
    def load(cls, *, path: Path | None = None) -> Config:
        """
        Load the config from `path`, or from `BFS_CONFIG` if not provided.

        Both YAML and JSON files are accepted, JSON being a subset of YAML.
        """
        path = path or _env_config_path()
        if path is None:
            _fail("missing config, neither a path nor BFS_CONFIG provided")

        if not path.is_file():
            _fail(f"config at '{path}' does not exist or is not a file")

        if path.suffix.lower() not in _CONFIG_SUFFIXES:
            _fail(f"config at '{path}' has unsupported type '{path.suffix}'")

        try:
            with path.open() as fd:
                raw = yaml.safe_load(fd)
        except (OSError, yaml.YAMLError) as e:
            _fail(f"unable to read config at '{path}': {e}", e)

        try:
            return cls.model_validate(raw)
        except pydantic.ValidationError as e:
            _fail(f"invalid config at '{path}': {e}", e)


def _env_config_path() -> Path | None:
    env_path = os.getenv("BFS_CONFIG")
    return Path(env_path) if env_path else None


def _fail(msg: str, cause: Exception | None = None) -> NoReturn:
    logger.error(msg)
    raise ConfigError(msg) from cause


_config: Config | None = None


def config_init(*, path: Path | None = None) -> Config:
    """Load the global config, unless it has been loaded already."""
    global _config
    if _config is None:
        _config = Config.load(path=path)
    return _config


def config_reset() -> None:
    global _config
    _config = None


def bfs_config() -> Config:
    if _config is None:
        _fail("config has not been initialized")
    return _config


def get_config() -> Config:
    # callers get their own copy, free to modify.
    return bfs_config().model_copy(deep=True)


BFSConfig = Annotated[Config, Depends(bfs_config)]
