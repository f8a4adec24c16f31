#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
 ###   #      ##    ###  #  #
 #  #  #     #  #  #     # #
 ###   #     #  #  #     ##
 # #   #     #  #  #     # #
 #  #  ####   ##    ###  #  #

RLock is a distributed mutual-exclusion lock coordinated through a shared key-value
store. Processes that never talk to each other agree on exclusive ownership of a
named resource through the store's atomic "set if absent" and an atomic
compare-and-delete, while the record TTL bounds the damage of a crashed holder.

License: MIT
"""
from __future__ import annotations
import os, time, math, contextlib, threading
from uuid import uuid4
from collections import namedtuple
from datetime import datetime
from threading import Lock
from rlock.base import (RLockException, RLockConfigError, RLockBackendError, RLockTimeoutError,
                        RLockCancelledError, RLockWarmUpException, ElapsedTimer, RLockLogging)
from rlock.stores import StoreAdapter, RedisStore

__all__ = ['LockConfig','LockInfo','ReleaseCapability','LockHandle','RLock',
           'set_default','get_default','acquire','try_acquire']

LockInfo = namedtuple("LockInfo",["lock_key","token","ttl","expire_datetime","return_code","return_message","elapsed_time"],
                      defaults=[None,None,None,None,None,None,None])

class LockConfig(namedtuple("LockConfig",["prefix","expiration","retry_interval","retry_timeout"],
                            defaults=["RLOCK_",10.0,0.05,5.0])):
    """Immutable lock tunables. All durations are in seconds.

        prefix          prepended to every resource name to build the store key
        expiration      TTL of the lock record, independent of the acquisition deadline
        retry_interval  wait between two set-if-absent attempts
        retry_timeout   acquisition deadline, 0 means a single attempt

    The record TTL must outlive the acquisition deadline, so `expiration` has to be greater than
    `retry_timeout`. Violations raise RLockConfigError.
    """
    __slots__ = ()

    def __new__(cls,*args,**kwargs):
        self = super().__new__(cls,*args,**kwargs)
        self.validate()
        return self

    def validate(self)->None:
        if not isinstance(self.prefix,str):
            raise RLockConfigError(f"prefix must be a string (current {type(self.prefix)})") from None
        for field in ("expiration","retry_interval","retry_timeout"):
            value = getattr(self,field)
            if isinstance(value,bool) or not isinstance(value,(int,float)) or not math.isfinite(value):
                raise RLockConfigError(f"{field} must be a finite number of seconds (current {value!r})") from None
        if self.expiration <= 0:
            raise RLockConfigError(f"expiration must be greater than zero (current {self.expiration})") from None
        if self.retry_interval <= 0:
            raise RLockConfigError(f"retry_interval must be greater than zero (current {self.retry_interval})") from None
        if self.retry_timeout < 0:
            raise RLockConfigError(f"retry_timeout must not be negative (current {self.retry_timeout})") from None
        if self.expiration <= self.retry_timeout:
            raise RLockConfigError(f"expiration ({self.expiration}) must be greater than retry_timeout ({self.retry_timeout})") from None

    def replace(self,**overrides)->LockConfig:
        """Return a validated copy with the non-None overrides applied."""
        return self._replace(**{k: v for k, v in overrides.items() if v is not None})

    def _replace(self,**kwargs)->LockConfig:
        return type(self)(**{**self._asdict(),**kwargs})

    @classmethod
    def from_env(cls,environ:dict|None=None)->LockConfig:
        """Build a configuration from RLOCK_KEY_PREFIX, RLOCK_EXPIRATION, RLOCK_RETRY_INTERVAL and RLOCK_RETRY_TIMEOUT."""
        environ = os.environ if environ is None else environ
        overrides = {}
        if "RLOCK_KEY_PREFIX" in environ:
            overrides["prefix"] = environ["RLOCK_KEY_PREFIX"]
        for field, name in (("expiration","RLOCK_EXPIRATION"),("retry_interval","RLOCK_RETRY_INTERVAL"),("retry_timeout","RLOCK_RETRY_TIMEOUT")):
            if name in environ:
                try:
                    overrides[field] = float(environ[name])
                except ValueError:
                    raise RLockConfigError(f"{name} must be a number (current '{environ[name]}')") from None
        return cls(**overrides)

class ReleaseCapability():
    """Releases exactly one (key, token) pair. Returned by every acquisition, successful or not.

    Calling it returns True only when this token still owned the record and the record was deleted.
    A capability from a failed acquisition never touches the store and always returns False, so it
    is always safe to call in a `finally` block. It is also a context manager that releases on exit.
    """
    def __init__(self,store:StoreAdapter|None,key:str,token:str|None,logger:RLockLogging|None=None)->None:
        self.store = store
        self.key = key
        self.token = token
        self.logger = logger if logger is not None else RLockLogging()

    @property
    def acquired(self)->bool:
        return self.store is not None and self.token is not None

    def __call__(self)->bool:
        return self.release()

    def release(self)->bool:
        if not self.acquired:
            return False
        with ElapsedTimer() as elapsed:
            try:
                released = self.store.compare_and_delete(self.key,self.token) == 1
            except RLockBackendError as ERR:
                self.logger.error(f"Release of lock '{self.key}' failed, it will expire with its TTL: {str(ERR)}")
                return False
            if released:
                self.logger.debug(f"Lock '{self.key}' successfully released {elapsed.text()}")
            else:
                self.logger.debug(f"Lock '{self.key}' is not owned by token '{self.token}' anymore, release ignored {elapsed.text()}")
            return released

    def __enter__(self)->ReleaseCapability:
        return self

    def __exit__(self,exc_type,exc_value,traceback)->None:
        self.release()

    def __repr__(self)->str:
        return f"<{self.__class__.__name__} key='{self.key}' acquired={self.acquired}>"

class LockHandle():
    """A single acquisition attempt of one resource with its own token and resolved configuration."""
    def __init__(self,store:StoreAdapter,name:str,config:LockConfig,logger:RLockLogging)->None:
        if not isinstance(name,str) or name == "":
            raise RLockConfigError("The lock name must be a non-empty string") from None
        self.store = store
        self.name = name
        self.config = config
        self.logger = logger
        self.key = f"{config.prefix}{name}"
        self.token = f"{name}_{uuid4()}"
        self.outcome:str|None = None  # acquired, timeout, cancelled or backend_error, set when acquire() returns
        self.error:RLockBackendError|None = None

    def _not_acquired(self,outcome:str)->tuple[bool,ReleaseCapability]:
        self.outcome = outcome
        return False, ReleaseCapability(None,self.key,None,self.logger)

    def acquire(self,cancel:threading.Event|None=None)->tuple[bool,ReleaseCapability]:
        """Run the retry loop until the lock is obtained, `retry_timeout` has elapsed or `cancel` is set.

        A backend error ends the loop at once.
        """
        deadline = time.monotonic() + self.config.retry_timeout
        attempts = 0
        with ElapsedTimer() as elapsed:
            while True:
                if cancel is not None and cancel.is_set():
                    self.logger.debug(f"Acquisition of lock '{self.key}' cancelled after {attempts} attempt(s) {elapsed.text()}")
                    return self._not_acquired("cancelled")
                attempts += 1
                try:
                    if self.store.set_if_absent(self.key,self.token,self.config.expiration):
                        self.logger.debug(f"Lock '{self.key}' successfully acquired after {attempts} attempt(s) {elapsed.text()}")
                        self.outcome = "acquired"
                        return True, ReleaseCapability(self.store,self.key,self.token,self.logger)
                except RLockBackendError as ERR:
                    self.error = ERR
                    self.logger.error(f"Acquisition of lock '{self.key}' aborted: {str(ERR)}")
                    return self._not_acquired("backend_error")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.logger.debug(f"Timed out on acquiring lock '{self.key}' after {attempts} attempt(s) {elapsed.text()}")
                    return self._not_acquired("timeout")
                wait = min(self.config.retry_interval,remaining)
                if cancel is not None:
                    cancel.wait(wait)
                else:
                    time.sleep(wait)

class RLock():
    """
    Lock manager. Holds the store adapter and the default configuration and hands out one
    LockHandle per acquisition. Instances hold no state across acquisitions and may be shared
    by every thread of a process.

    Parameters:
        store (StoreAdapter):
            A RedisStore, a DynamoDBStore or any other StoreAdapter implementation.

        config (LockConfig, optional):
            Default tunables. Each call may override them without changing the defaults.

        warmup (bool, default=False):
            If True, pings the store during initialization and raises RLockWarmUpException on failure.

        verbose (bool, default=False):
            If True, prints informational messages.

        debug (bool, default=False):
            If True, prints every acquisition and release with its elapsed time.

    Usage:

        from redis import Redis
        from rlock import RLock, RedisStore

        locks = RLock(RedisStore(Redis.from_url("redis://localhost:6379/0")))

        ok, release = locks.acquire("my_lock", timeout=2)
        try:
            if ok:
                do_something_exclusive()
        finally:
            release()

        with locks.lock("my_lock"):
            do_something_exclusive()
    """
    def __init__(self,store:StoreAdapter,config:LockConfig|None=None,*,warmup:bool=False,verbose:bool=False,debug:bool=False)->None:
        if not isinstance(store,StoreAdapter):
            raise AttributeError(f"The provided store parameter is not a valid rlock.StoreAdapter (current class {type(store)})") from None
        self.verbose = verbose
        self.debug = debug
        self.logger = self._get_logger()
        self.store = store
        self.store.set_logger(self.logger)
        self.config = config if config is not None else LockConfig()
        with ElapsedTimer() as elapsed:
            if warmup:
                self.warmup()
            self.logger.info(f"Initialized {self.__class__.__name__}: store={self.store.__class__.__name__} prefix='{self.config.prefix}' "
                             f"expiration={self.config.expiration} retry_interval={self.config.retry_interval} "
                             f"retry_timeout={self.config.retry_timeout} {elapsed.text()}")

    @classmethod
    def from_url(cls,url:str|None=None,config:LockConfig|None=None,**kwargs)->RLock:
        """Create an RLock over Redis. The url defaults to the REDIS_URL environment variable, then redis://localhost:6379/0."""
        return cls(RedisStore.from_url(url or os.getenv("REDIS_URL","redis://localhost:6379/0")),config,**kwargs)

    def _get_logger(self)->RLockLogging:
        """You can customize the logging mechanism by overriding this method and returning a subclass of RLockLogging."""
        return RLockLogging(verbose=self.verbose,debug=self.debug)

    def warmup(self)->bool:
        """Check that the store answers. Raises RLockWarmUpException otherwise."""
        with ElapsedTimer() as elapsed:
            try:
                if not self.store.ping():
                    raise RLockWarmUpException("The store did not answer the ping") from None
            except RLockBackendError as ERR:
                raise RLockWarmUpException(f"{str(ERR)}. Check your access to the store and try again.") from None
            self.logger.debug(f"Warm-Up finished {elapsed.text()}")
        return True

    def new_handle(self,name:str,**overrides)->LockHandle:
        """Create a LockHandle for `name` with a copy of the default configuration updated by `overrides`."""
        return LockHandle(self.store,name,self.config.replace(**overrides),self.logger)

    def acquire(self,name:str,*,timeout:float|None=None,expiration:float|None=None,retry_interval:float|None=None,
                cancel:threading.Event|None=None)->tuple[bool,ReleaseCapability]:
        """Acquire the lock `name`, retrying every `retry_interval` seconds until `timeout` seconds have elapsed
        or the `cancel` event is set. Returns (acquired, release); `release` is always callable.
        """
        handle = self.new_handle(name,retry_timeout=timeout,expiration=expiration,retry_interval=retry_interval)
        return handle.acquire(cancel=cancel)

    def try_acquire(self,name:str,*,expiration:float|None=None)->tuple[bool,ReleaseCapability]:
        """Make exactly one attempt to acquire the lock `name`."""
        return self.new_handle(name,retry_timeout=0,expiration=expiration).acquire()

    @contextlib.contextmanager
    def lock(self,name:str,**options):
        """Context manager around acquire(). When the lock is not obtained it raises RLockTimeoutError once the
        deadline has passed, RLockCancelledError when the `cancel` event was set, and RLockBackendError when the
        store failed.
        """
        cancel = options.pop("cancel",None)
        handle = self.new_handle(name,retry_timeout=options.pop("timeout",None),**options)
        acquired, release = handle.acquire(cancel=cancel)
        if not acquired:
            if handle.outcome == "cancelled":
                raise RLockCancelledError(f"Acquisition of lock '{handle.key}' was cancelled.") from None
            if handle.outcome == "backend_error":
                raise RLockBackendError(f"Acquisition of lock '{handle.key}' failed: {str(handle.error)}") from None
            raise RLockTimeoutError(f"Timed out on acquiring lock '{handle.key}'.") from None
        try:
            yield release
        finally:
            release()

    def is_locked(self,name:str)->bool:
        """Return True if some token currently holds the lock `name`."""
        return self.store.get(f"{self.config.prefix}{name}") is not None

    def get_lock_info(self,name:str)->LockInfo:
        """Return a LockInfo namedtuple describing the record of `name`. return_code is 200, 404 or 500."""
        key = f"{self.config.prefix}{name}"
        with ElapsedTimer() as elapsed:
            try:
                token = self.store.get(key)
                ttl = self.store.ttl(key) if token is not None else None
            except RLockBackendError as ERR:
                return LockInfo(lock_key=key,return_code=500,return_message=f"Internal error {str(ERR)}",elapsed_time=elapsed.time_as_float())
            if token is None or ttl is None:
                return LockInfo(lock_key=key,return_code=404,return_message="Lock Not Found",elapsed_time=elapsed.time_as_float())
            expire_datetime = datetime.fromtimestamp(time.time() + ttl) if ttl != float("inf") else None
            return LockInfo(lock_key=key,token=token,ttl=ttl,expire_datetime=expire_datetime,
                            return_code=200,return_message="OK",elapsed_time=elapsed.time_as_float())

##──── Process-wide default manager. Nothing is created implicitly: call set_default() once at start-up. ─────────────────────
_default_lock:Lock = Lock()
_default_manager:RLock|None = None

def set_default(manager:RLock)->RLock:
    """Register `manager` as the process-wide default. Calling it again with the same manager is a no-op."""
    global _default_manager
    if not isinstance(manager,RLock):
        raise AttributeError(f"The provided manager is not a valid rlock.RLock (current class {type(manager)})") from None
    with _default_lock:
        _default_manager = manager
    return manager

def get_default()->RLock:
    with _default_lock:
        if _default_manager is None:
            raise RLockException("No default RLock registered, call rlock.set_default() first") from None
        return _default_manager

def acquire(name:str,**options)->tuple[bool,ReleaseCapability]:
    """RLock.acquire() on the default manager."""
    return get_default().acquire(name,**options)

def try_acquire(name:str,**options)->tuple[bool,ReleaseCapability]:
    """RLock.try_acquire() on the default manager."""
    return get_default().try_acquire(name,**options)
