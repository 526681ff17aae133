#!/usr/bin/python3
import logging

import pymemcache.client.base
import pymemcache.exceptions
import redis

logger = logging.getLogger("store")

REPUTATION_PREFIX = "sagrey_"
REPUTATION_MAX = 1000000


class StoreError(Exception):
    """
    The key-value store could not be reached or refused the request.
    """


def parse_server(server):
    host, sep, port = server.rpartition(":")
    if not sep or not host:
        raise ValueError("Invalid server address, expected host:port: {}".format(
            server))
    try:
        port = int(port)
    except ValueError:
        raise ValueError("Invalid port in server address: {}".format(server))
    if not 0 < port < 65536:
        raise ValueError("Port out of range in server address: {}".format(
            server))
    # allow [::1]:11211
    return host.strip("[]"), port


def _decode(value):
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class MemcachedStore:
    def __init__(self, client):
        self.client = client

    def get(self, key):
        try:
            return _decode(self.client.get(key))
        except (pymemcache.exceptions.MemcacheError, OSError) as err:
            raise StoreError("memcached get {!r} failed: {}".format(key, err))

    def set(self, key, value, ttl):
        try:
            self.client.set(key, value, expire=int(ttl), noreply=False)
        except (pymemcache.exceptions.MemcacheError, OSError) as err:
            raise StoreError("memcached set {!r} failed: {}".format(key, err))


class RedisStore:
    def __init__(self, client):
        self.client = client

    def get(self, key):
        try:
            return _decode(self.client.get(key))
        except redis.RedisError as err:
            raise StoreError("redis get {!r} failed: {}".format(key, err))

    def set(self, key, value, ttl):
        try:
            self.client.setex(key, int(ttl), value)
        except redis.RedisError as err:
            raise StoreError("redis set {!r} failed: {}".format(key, err))


def connect(config):
    host, port = parse_server(config.store_server)
    logger.debug("using %s at %s:%d", config.store_backend, host, port)
    if config.store_backend == "memcached":
        return MemcachedStore(pymemcache.client.base.Client(
            (host, port),
            connect_timeout=config.store_timeout,
            timeout=config.store_timeout))
    elif config.store_backend == "redis":
        return RedisStore(redis.Redis(
            host=host, port=port,
            socket_connect_timeout=config.store_timeout,
            socket_timeout=config.store_timeout))
    raise ValueError("Unknown store backend: {}".format(config.store_backend))


class ReputationStore:
    """
    Per source IP count of greylisting rounds the server completed, i.e. how
    often it came back after its greylist record expired.

    The read and the write of an increment are separate round trips. Two
    mailservers sharing the store may both read the same value and both write
    value+1, losing one increment. The counter only has to get past the
    reputation threshold eventually, so that is acceptable.
    """

    def __init__(self, backend):
        self.backend = backend

    @staticmethod
    def key(host):
        return REPUTATION_PREFIX + host

    def get_count(self, host):
        value = self.backend.get(self.key(host))
        if value is None:
            return 0
        try:
            count = int(value)
        except ValueError:
            logger.warning("malformed reputation value for %s: %r",
                           host, value)
            return 0
        if count < 0:
            logger.warning("negative reputation value for %s: %r",
                           host, value)
            return 0
        return count

    def record_success(self, host, current_count, ttl):
        if isinstance(current_count, int) and current_count >= 0:
            count = min(current_count + 1, REPUTATION_MAX)
        else:
            count = 1
        self.backend.set(self.key(host), str(count), ttl)
        logger.debug("reputation of %s is now %d", host, count)
        return count


class GreylistRecordStore:
    @staticmethod
    def key(sender, host_name):
        return sender + "src" + host_name

    def __init__(self, backend):
        self.backend = backend

    def is_active(self, key):
        return self.backend.get(key) is not None

    def begin_window(self, key, ttl):
        # the value is never looked at, only its presence matters
        self.backend.set(key, "Greylisting for {} seconds".format(int(ttl)),
                         ttl)
