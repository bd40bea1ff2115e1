'''
Services the dispatcher drives after a subscription transition has been committed: the user cache,
the staff seat service and the real-time notification channel to an organization's connected
clients.

Each service is described by a Protocol so that alternate implementations (in-memory versions for
local development, recording fakes in the tests) can be swapped in through `Collaborators`.
'''

import json
import typing
import logging
import threading
import dataclasses

import redis

import base
import backend

log = logging.Logger('COLLABORATORS')

def cache_key(*parts: str | int) -> str:
    result = ':'.join(str(it) for it in parts)
    return result

def user_cache_keys(user: backend.UserRow) -> list[str]:
    result = [cache_key('user', user.id), cache_key('user', 'email', user.email)]
    return result

class Cache(typing.Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str, ttl_s: int | None = None) -> None: ...
    def delete(self, key: str) -> bool: ...

class StaffService(typing.Protocol):
    def enable_all_staff(self, organization_id: int) -> int: ...
    def disable_all_staff(self, organization_id: int) -> int: ...

class NotificationService(typing.Protocol):
    def emit_to_organization(self, organization_id: int, event_kind: str, payload: dict[str, base.JSONValue]) -> None: ...

class MemoryCache:
    '''Process local cache, used when no Redis server is configured'''
    def __init__(self, key_prefix: str = ''):
        self.key_prefix: str            = key_prefix
        self.lock:       threading.Lock = threading.Lock()
        self.store:      dict[str, str] = {}

    def _full_key(self, key: str) -> str:
        result = f'{self.key_prefix}{key}'
        return result

    def get(self, key: str) -> str | None:
        with self.lock:
            result = self.store.get(self._full_key(key))
        return result

    def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        # NOTE: Entries don't expire, the process lifetime bounds them
        with self.lock:
            self.store[self._full_key(key)] = value

    def delete(self, key: str) -> bool:
        with self.lock:
            result = self.store.pop(self._full_key(key), None) is not None
        return result

class RedisCache:
    def __init__(self, redis_url: str, key_prefix: str = ''):
        self.key_prefix: str         = key_prefix
        self.client:     redis.Redis = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)

    def _full_key(self, key: str) -> str:
        result = f'{self.key_prefix}{key}'
        return result

    def get(self, key: str) -> str | None:
        result = typing.cast(str | None, self.client.get(self._full_key(key)))
        return result

    def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        _ = self.client.set(self._full_key(key), value, ex=ttl_s)

    def delete(self, key: str) -> bool:
        result = typing.cast(int, self.client.delete(self._full_key(key))) > 0
        return result

class SQLStaffService:
    """
    Enables and disables the staff accounts of an organization directly in the database. The
    cached entries of every toggled user are dropped so that their next request observes the new
    state.
    """
    def __init__(self, db_path: str, db_path_is_uri: bool, cache: Cache):
        self.db_path:        str   = db_path
        self.db_path_is_uri: bool  = db_path_is_uri
        self.cache:          Cache = cache

    def _drop_cached_users(self, users: list[backend.UserRow]):
        for user in users:
            for key in user_cache_keys(user) + [cache_key('user', 'session_version', user.id)]:
                _ = self.cache.delete(key)

    def enable_all_staff(self, organization_id: int) -> int:
        with backend.OpenDBAtPath(self.db_path, self.db_path_is_uri) as db:
            with base.SQLTransaction(db.sql_conn, base.SQLTransactionMode.Immediate) as tx:
                users = backend.enable_all_staff_tx(tx, organization_id, base.unix_ts_ms_now())
        self._drop_cached_users(users)
        log.info(f'Enabled {len(users)} staff account(s) for organization {organization_id}')
        return len(users)

    def disable_all_staff(self, organization_id: int) -> int:
        with backend.OpenDBAtPath(self.db_path, self.db_path_is_uri) as db:
            with base.SQLTransaction(db.sql_conn, base.SQLTransactionMode.Immediate) as tx:
                users = backend.disable_all_staff_tx(tx, organization_id, base.unix_ts_ms_now())
        self._drop_cached_users(users)
        log.info(f'Disabled {len(users)} staff account(s) for organization {organization_id}')
        return len(users)

class LoggingNotificationService:
    '''Writes the notification to the log, used when no real-time channel is configured'''
    def emit_to_organization(self, organization_id: int, event_kind: str, payload: dict[str, base.JSONValue]) -> None:
        log.info(f'Notify organization {organization_id} of {event_kind}: {json.dumps(payload)}')

class RedisNotificationService:
    '''
    Publishes the notification on the organization's Redis channel. The real-time gateway that
    holds the client connections subscribes to these channels and forwards each message.
    '''
    def __init__(self, redis_url: str, channel_prefix: str = 'organization'):
        self.channel_prefix: str         = channel_prefix
        self.client:         redis.Redis = redis.Redis.from_url(redis_url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)

    def emit_to_organization(self, organization_id: int, event_kind: str, payload: dict[str, base.JSONValue]) -> None:
        channel   = cache_key(self.channel_prefix, organization_id)
        message   = json.dumps({'event': event_kind, 'data': payload})
        receivers = typing.cast(int, self.client.publish(channel, message))
        log.info(f'Published {event_kind} to {channel} ({receivers} receiver(s))')

@dataclasses.dataclass
class Collaborators:
    cache:    Cache
    staff:    StaffService
    notifier: NotificationService

def make_default_collaborators(db_path: str, db_path_is_uri: bool) -> Collaborators:
    cache  = MemoryCache()
    result = Collaborators(cache=cache, staff=SQLStaffService(db_path, db_path_is_uri, cache), notifier=LoggingNotificationService())
    return result
