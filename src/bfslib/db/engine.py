# BFS library - db - engine
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

from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import override

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bfslib.config.db import DBConfig
from bfslib.db import logger as parent_logger
from bfslib.db.models import Base
from bfslib.errors import BFSError

logger = parent_logger.getChild("engine")


class DatabaseError(BFSError):
    @override
    def __str__(self) -> str:
        return "Database error" + (f": {self.msg}" if self.msg else "")


def build_engine(config: DBConfig) -> Engine:
    try:
        url = make_url(config.url)
    except ArgumentError as e:
        msg = f"malformed database url: {e}"
        logger.error(msg)
        raise DatabaseError(msg) from e

    backend = url.get_backend_name()
    if backend == "sqlite":
        # sqlite transactions are serializable by construction.
        if url.database in (None, "", ":memory:"):
            return create_engine(
                url,
                echo=config.echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(
            url,
            echo=config.echo,
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )

    if backend == "postgresql":
        return create_engine(
            url,
            echo=config.echo,
            pool_pre_ping=True,
            pool_size=config.pool_size,
            isolation_level="SERIALIZABLE",
        )

    msg = f"unsupported database backend '{backend}'"
    logger.error(msg)
    raise DatabaseError(msg)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Session scope, committing on success and rolling back on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class Database:
    """Per-process database handle, owning the engine's connection pool."""

    _config: DBConfig
    _engine: Engine
    _sessionmaker: sessionmaker[Session]

    def __init__(self, config: DBConfig) -> None:
        self._config = config
        self._engine = build_engine(config)
        self._sessionmaker = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
        )
        logger.debug(f"database engine for '{self._engine.url!r}'")

    @property
    def config(self) -> DBConfig:
        return self._config

    @property
    def engine(self) -> Engine:
        return self._engine

    def begin(self) -> AbstractContextManager[Session]:
        """
        Start a new transaction, on a new session.

        The transaction commits when the context exits cleanly, and rolls back
        otherwise. The session, and its connection, are released on exit.
        """
        return session_scope(self._sessionmaker)

    def create_all(self) -> None:
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            msg = f"unable to create database schema: {e}"
            logger.error(msg)
            raise DatabaseError(msg) from e

    def close(self) -> None:
        self._engine.dispose()
