# BFS library - ci - github - app auth
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

import datetime
from datetime import datetime as dt
from pathlib import Path
from typing import override

import httpx
import jwt

from bfslib.ci.github import logger as parent_logger
from bfslib.ci.github.client import GitHubClient, GitHubError
from bfslib.ci.github.service_data import InstallationAccessToken, ServiceData
from bfslib.config.config import GitHubConfig
from bfslib.errors import BFSError

logger = parent_logger.getChild("auth")

# tokens are backdated, allowing for clock drift between us and GitHub.
_CLOCK_DRIFT = datetime.timedelta(seconds=60)


class GitHubAppAuthError(BFSError):
    @override
    def __str__(self) -> str:
        return "GitHub app auth error" + (f": {self.msg}" if self.msg else "")


class GitHubAppAuth:
    """
    Authenticates as a GitHub App.

    The app signs short-lived JWTs with its private key, which are then
    exchanged for installation access tokens. An instance may be used as a
    token provider, refreshing a tenant's expired installation access token.
    """

    _app_id: int
    _private_key: str
    _api_url: str
    _timeout: float
    _jwt_validity: datetime.timedelta
    _transport: httpx.BaseTransport | None

    def __init__(
        self,
        app_id: int,
        private_key: str,
        *,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        jwt_validity: int = 600,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._app_id = app_id
        self._private_key = private_key
        self._api_url = api_url
        self._timeout = timeout
        self._jwt_validity = datetime.timedelta(seconds=jwt_validity)
        self._transport = transport

    @classmethod
    def from_config(cls, config: GitHubConfig) -> GitHubAppAuth | None:
        """Set up app auth, if the app is configured."""
        if config.app_id is None or config.private_key is None:
            return None

        try:
            private_key = Path(config.private_key).read_text()
        except OSError as e:
            msg = f"unable to read app private key at '{config.private_key}': {e}"
            logger.error(msg)
            raise GitHubAppAuthError(msg) from e

        return cls(
            config.app_id,
            private_key,
            api_url=config.api_url,
            timeout=config.timeout,
            jwt_validity=config.jwt_validity,
        )

    @property
    def app_id(self) -> int:
        return self._app_id

    def generate_jwt(self) -> str:
        iat = dt.now(tz=datetime.UTC) - _CLOCK_DRIFT
        payload = {
            "iat": int(iat.timestamp()),
            "exp": int((iat + self._jwt_validity).timestamp()),
            "iss": str(self._app_id),
        }
        try:
            return jwt.encode(payload, self._private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError) as e:
            msg = f"unable to sign app token: {e}"
            logger.error(msg)
            raise GitHubAppAuthError(msg) from e

    def installation_token(self, installation_id: int) -> InstallationAccessToken:
        with GitHubClient(
            self._api_url,
            self.generate_jwt(),
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            token = client.create_installation_access_token(installation_id)

        logger.debug(
            f"obtained access token for installation '{installation_id}', "
            + f"expires at {token.expires_at}"
        )
        return token

    def __call__(self, sd: ServiceData) -> InstallationAccessToken:
        if sd.app_id != self._app_id:
            msg = (
                f"service data belongs to app '{sd.app_id}', "
                + f"we are app '{self._app_id}'"
            )
            logger.error(msg)
            raise GitHubError(msg)
        return self.installation_token(sd.installation_id)
