#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
 ###   #      ##    ###  #  #
 #  #  #     #  #  #     # #
 ###   #     #  #  #     ##
 # #   #     #  #  #     # #
 #  #  ####   ##    ###  #  #

Redis endpoint helpers: URL parsing and client construction.

License: MIT
"""
from __future__ import annotations
from collections import namedtuple
from urllib.parse import urlsplit
from redis import Redis
from redis.connection import parse_url
from redis.exceptions import RedisError
from rlock.base import RLockConfigError, RLockBackendError

__all__ = ['DEFAULT_REDIS_PORT','DEFAULT_REDIS_POOL_SIZE','RedisOptions','parse_redis_url','new_redis_client']

DEFAULT_REDIS_PORT = 6379
DEFAULT_REDIS_POOL_SIZE = 1024

RedisOptions = namedtuple("RedisOptions",["scheme","addr","host","port","password","db","pool_size"])

def parse_redis_url(url:str)->RedisOptions:
    """Parse `scheme://[:password@]host[:port][/db]` into RedisOptions.

    Decoding of the password, host and db index is left to redis-py. The port defaults to 6379 and
    the db index to 0. Raises RLockConfigError on an unknown scheme, a missing host, a bad port or db index.
    """
    try:
        kwargs = parse_url(url)
    except ValueError as ERR:
        raise RLockConfigError(f"Failed to parse Redis URL '{url}': {str(ERR)}") from None
    if kwargs.get("host") is None:
        raise RLockConfigError(f"Missing host in Redis URL '{url}'") from None
    ##──── parse_url silently drops a db index that is not a number
    path = urlsplit(url).path
    if "db" not in kwargs and path not in ("","/"):
        raise RLockConfigError(f"Invalid DB index in Redis URL '{url}'") from None
    port = kwargs.get("port",DEFAULT_REDIS_PORT)
    return RedisOptions(scheme=url.split("://",1)[0],
                        addr=f"{kwargs['host']}:{port}",
                        host=kwargs["host"],
                        port=port,
                        password=kwargs.get("password"),
                        db=kwargs.get("db",0),
                        pool_size=DEFAULT_REDIS_POOL_SIZE)

def new_redis_client(url:str,**kwargs)->Redis:
    """Create a redis.Redis for `url` and verify the connection with PING. Extra kwargs go to redis.Redis."""
    opt = parse_redis_url(url)
    client = Redis(host=opt.host,port=opt.port,db=opt.db,password=opt.password,
                   max_connections=opt.pool_size,ssl=(opt.scheme == "rediss"),**kwargs)
    try:
        client.ping()
    except RedisError as ERR:
        raise RLockBackendError(f"Failed to connect to Redis at {opt.addr}: {str(ERR)}") from None
    return client
