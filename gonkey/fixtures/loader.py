"""Choosing a fixture loader for the configured database."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from gonkey.fixtures.aerospike import AerospikeLoader
from gonkey.fixtures.mysql import MysqlLoader
from gonkey.fixtures.postgres import PostgresLoader

POSTGRES_PARAM = "postgres"
MYSQL_PARAM = "mysql"
AEROSPIKE_PARAM = "aerospike"
REDIS_PARAM = "redis"


class DbType(Enum):
    """Kind of storage fixtures are loaded into."""

    POSTGRES = 0
    MYSQL = 1
    AEROSPIKE = 2
    REDIS = 3
    CUSTOM_LOADER = 4


@runtime_checkable
class Loader(Protocol):
    """Anything that can load fixtures by name."""

    def load(self, names: list[str]) -> None:
        """Load the named fixtures."""
        ...


@dataclass
class LoaderConfig:
    """Where and how fixtures are loaded."""

    db: Any = None
    aerospike: Any = None
    db_type: DbType = DbType.POSTGRES
    location: str = ""
    debug: bool = False
    fixture_loader: Loader | None = None


_PARAMS = {
    POSTGRES_PARAM: DbType.POSTGRES,
    MYSQL_PARAM: DbType.MYSQL,
    AEROSPIKE_PARAM: DbType.AEROSPIKE,
    REDIS_PARAM: DbType.REDIS,
}


def fetch_db_type(db_type: str) -> DbType:
    """Map a command-line database name to its DbType."""
    try:
        return _PARAMS[db_type]
    except KeyError:
        raise ValueError("unknown db type param") from None


def new_loader(cfg: LoaderConfig) -> Loader:
    """Build the loader for ``cfg.db_type``, falling back to ``cfg.fixture_loader``."""
    location = cfg.location.rstrip("/")
    if cfg.db_type is DbType.POSTGRES:
        return PostgresLoader(cfg.db, location, cfg.debug)
    if cfg.db_type is DbType.MYSQL:
        return MysqlLoader(cfg.db, location, cfg.debug)
    if cfg.db_type is DbType.AEROSPIKE:
        return AerospikeLoader(cfg.aerospike, location, cfg.debug)
    if cfg.fixture_loader is not None:
        return cfg.fixture_loader
    raise ValueError("unknown db type")