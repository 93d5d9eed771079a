"""Loading YAML fixtures into Redis databases."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import redis

from gonkey.fixtures.redis_fixture import (
    Context,
    Database,
    Fixture,
    HashRecordValue,
    ListRecordValue,
    SetRecordValue,
    ZSetRecordValue,
)
from gonkey.fixtures.redis_parser import FileParser

_ONE_SECOND = timedelta(seconds=1)


class RedisLoader:
    """Flushes the databases named in fixtures and fills them with data.

    Each database is flushed only the first time a load touches it, so
    several fixtures may add data to the same database.
    """

    def __init__(self, fixture_dir: str, client: redis.Redis) -> None:
        self.locations = [fixture_dir]
        self.client = client

    @classmethod
    def from_url(cls, fixture_dir: str, url: str) -> RedisLoader:
        """Create a loader talking to the server at ``url``."""
        try:
            client = redis.Redis.from_url(url)
        except ValueError as err:
            raise ValueError("redis_url attribute is not a valid URL") from err
        return cls(fixture_dir, client)

    def load(self, names: list[str]) -> None:
        """Parse the named fixture files and load their data."""
        ctx = Context()
        fixtures = FileParser(self.locations).parse_files(ctx, names)
        self._load_data(fixtures)

    def _load_data(self, fixtures: list[Fixture]) -> None:
        truncated: set[int] = set()
        for fixture in fixtures:
            for db_id, database in fixture.databases.items():
                need_truncate = db_id not in truncated
                truncated.add(db_id)
                self._load_database(db_id, database, need_truncate)

    def _load_database(self, db_id: int, database: Database, need_truncate: bool) -> None:
        home_db = self.client.get_connection_kwargs().get("db", 0)
        pipe = self.client.pipeline(transaction=False)
        pipe.execute_command("SELECT", db_id)
        if need_truncate:
            pipe.flushdb()

        _load_keys(pipe, database)
        _load_sets(pipe, database)
        _load_hashes(pipe, database)
        _load_lists(pipe, database)
        _load_sorted_sets(pipe, database)

        # Give the pooled connection back on the database the client expects.
        pipe.execute_command("SELECT", home_db)
        pipe.execute()


def _required(item: Any, what: str, key: str) -> Any:
    if item is None:
        raise ValueError(f"empty {what} value in {key}")
    return item


def _expire(pipe: Any, key: str, expiration: timedelta) -> None:
    if expiration > timedelta(0):
        pipe.expire(key, expiration)


def _load_keys(pipe: Any, database: Database) -> None:
    if database.keys is None:
        return
    for key, item in database.keys.values.items():
        item = _required(item, "key", key)
        expiration = item.expiration
        if expiration <= timedelta(0):
            pipe.set(key, item.value.value)
        elif expiration % _ONE_SECOND == timedelta(0):
            pipe.set(key, item.value.value, ex=int(expiration.total_seconds()))
        else:
            pipe.set(key, item.value.value, px=expiration // timedelta(milliseconds=1))


def _load_sets(pipe: Any, database: Database) -> None:
    if database.sets is None:
        return
    for key, record in database.sets.values.items():
        record: SetRecordValue
        members = [_required(v, "set", key).value.value for v in record.values]
        pipe.sadd(key, *members)
        _expire(pipe, key, record.expiration)


def _load_hashes(pipe: Any, database: Database) -> None:
    if database.hashes is None:
        return
    for key, record in database.hashes.values.items():
        record: HashRecordValue
        mapping = {}
        for item in record.values:
            item = _required(item, "hash", key)
            mapping[item.key.value] = item.value.value
        pipe.hset(key, mapping=mapping)
        _expire(pipe, key, record.expiration)


def _load_lists(pipe: Any, database: Database) -> None:
    if database.lists is None:
        return
    for key, record in database.lists.values.items():
        record: ListRecordValue
        items = [_required(v, "list", key).value.value for v in record.values]
        pipe.rpush(key, *items)
        _expire(pipe, key, record.expiration)


def _load_sorted_sets(pipe: Any, database: Database) -> None:
    if database.zsets is None:
        return
    for key, record in database.zsets.values.items():
        record: ZSetRecordValue
        mapping = {}
        for item in record.values:
            item = _required(item, "zset", key)
            mapping[item.value.value] = item.score
        pipe.zadd(key, mapping)
        _expire(pipe, key, record.expiration)