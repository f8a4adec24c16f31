#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
 ###   #      ##    ###  #  #
 #  #  #     #  #  #     # #
 ###   #     #  #  #     ##
 # #   #     #  #  #     # #
 #  #  ####   ##    ###  #  #

Store adapters: the only place where rlock talks to a backend. Every adapter
offers an atomic set-if-absent with TTL and an atomic compare-and-delete, and
converts backend failures into RLockBackendError.

License: MIT
"""
from __future__ import annotations
import time, math
from abc import ABC, abstractmethod
from threading import Lock
from redis import Redis
from redis.exceptions import RedisError, ResponseError, NoScriptError
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError
from boto3.dynamodb.conditions import Attr, Or
from boto3.dynamodb.table import TableResource as DynamoDBTableResource
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from rlock.base import RLockBackendError, RLockScriptError, RLockLogging, ElapsedTimer
from rlock.util import new_redis_client

__all__ = ['RELEASE_SCRIPT','StoreAdapter','RedisStore','DynamoDBStore','create_lock_table']

# KEYS[1] - the lock key, ARGV[1] - the caller's token. Returns 1 when deleted, otherwise 0.
RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end"""

class StoreAdapter(ABC):
    """Capability interface over the shared key-value backend. Durations are in seconds."""
    logger:RLockLogging = RLockLogging()

    @abstractmethod
    def set_if_absent(self,key:str,value:str,ttl:float)->bool:
        """Atomically write `value` under `key` with a TTL, only if the key does not exist."""
        raise NotImplementedError

    @abstractmethod
    def compare_and_delete(self,key:str,token:str)->int:
        """Atomically delete `key` if its value equals `token`. Returns the number of deleted keys (0 or 1)."""
        raise NotImplementedError

    @abstractmethod
    def get(self,key:str)->str|None:
        raise NotImplementedError

    @abstractmethod
    def ttl(self,key:str)->float|None:
        """Remaining lifetime of `key` in seconds, or None if it does not exist."""
        raise NotImplementedError

    @abstractmethod
    def ping(self)->bool:
        raise NotImplementedError

    def set_logger(self,logger:RLockLogging,replace:bool=False)->None:
        """Attach `logger` to this adapter. A logger set earlier, for example by another RLock sharing the adapter, is kept unless `replace` is True."""
        if replace or "logger" not in vars(self):
            self.logger = logger

class RedisStore(StoreAdapter):
    """Redis backend. Set-if-absent is SET NX PX and the release runs RELEASE_SCRIPT on the server.

    The script is registered with SCRIPT LOAD on the first release and invoked by its SHA1
    afterwards. If the registration fails every release sends the full script with EVAL.
    Set `use_script_cache=False` to always use EVAL.
    """
    def __init__(self,client:Redis,use_script_cache:bool=True)->None:
        if not isinstance(client,Redis):
            raise AttributeError(f"The provided client is not a valid redis.Redis instance (current class {type(client)})") from None
        self.client = client
        self.use_script_cache = use_script_cache
        self._script_lock:Lock = Lock()
        self._script_sha:str|None = None
        self._script_loaded = False

    @classmethod
    def from_url(cls,url:str,**kwargs)->RedisStore:
        return cls(new_redis_client(url),**kwargs)

    @property
    def script_sha(self)->str|None:
        return self._script_sha

    def load_release_script(self)->str:
        """Register RELEASE_SCRIPT with the server and return its SHA1.

        Raises RLockBackendError when the server cannot be reached and RLockScriptError when it refuses the script.
        """
        try:
            return _decode(self.client.script_load(RELEASE_SCRIPT))
        except (RedisConnectionError,RedisTimeoutError) as ERR:
            raise RLockBackendError(f"Failed to load the release script: {str(ERR)}") from None
        except RedisError as ERR:
            raise RLockScriptError(f"Failed to load the release script: {str(ERR)}") from None

    def _get_script_sha(self)->str|None:
        if not self.use_script_cache:
            return None
        with self._script_lock:
            if not self._script_loaded:
                try:
                    with ElapsedTimer() as elapsed:
                        self._script_sha = self.load_release_script()
                        self._script_loaded = True
                        self.logger.debug(f"Release script loaded with sha '{self._script_sha}' {elapsed.text()}")
                except RLockBackendError as ERR:
                    ##──── transient, try to register again on the next release
                    self.logger.debug(f"{str(ERR)}. Using EVAL for this release.")
                except RLockScriptError as ERR:
                    self._script_loaded = True
                    self.logger.error(f"{str(ERR)}. Falling back to EVAL on every release.")
            return self._script_sha

    def set_if_absent(self,key:str,value:str,ttl:float)->bool:
        try:
            return bool(self.client.set(key,value,px=max(1,int(ttl*1000)),nx=True))
        except RedisError as ERR:
            raise RLockBackendError(f"SET NX key '{key}' failed: {str(ERR)}") from None

    def compare_and_delete(self,key:str,token:str)->int:
        sha = self._get_script_sha()
        try:
            if sha is not None:
                try:
                    return int(self.client.evalsha(sha,1,key,token))
                except ResponseError as ERR:
                    if not (isinstance(ERR,NoScriptError) or str(ERR).startswith("NOSCRIPT")):
                        raise
                    ##──── the server forgot the script (SCRIPT FLUSH or restart), register it again on the next release
                    self.logger.debug(f"Release script '{sha}' is unknown to the server, using EVAL")
                    with self._script_lock:
                        self._script_sha, self._script_loaded = None, False
            return int(self.client.eval(RELEASE_SCRIPT,1,key,token))
        except RedisError as ERR:
            raise RLockBackendError(f"Release of key '{key}' failed: {str(ERR)}") from None

    def get(self,key:str)->str|None:
        try:
            return _decode(self.client.get(key))
        except RedisError as ERR:
            raise RLockBackendError(f"GET key '{key}' failed: {str(ERR)}") from None

    def ttl(self,key:str)->float|None:
        try:
            pttl = self.client.pttl(key)
        except RedisError as ERR:
            raise RLockBackendError(f"PTTL key '{key}' failed: {str(ERR)}") from None
        # -2: missing key, -1: key without expiration
        if pttl == -2: return None
        return math.inf if pttl == -1 else pttl/1000

    def ping(self)->bool:
        try:
            return bool(self.client.ping())
        except RedisError as ERR:
            raise RLockBackendError(f"PING failed: {str(ERR)}") from None

class DynamoDBStore(StoreAdapter):
    """DynamoDB backend for stores with no server-side scripting.

    Set-if-absent is a conditional put_item that also overwrites records whose `expires_at`
    is in the past, because DynamoDB removes expired items lazily. The release is a conditional
    delete_item on the token, a single round trip with the same guarantees as RELEASE_SCRIPT.
    Expiry is measured with the callers' wall clock.

    Items: {key_name: <lock key>, "token": <token>, "expires_at": <epoch ms>, "ttl": <epoch sec>}
    """
    def __init__(self,dynamodb_table_resource:DynamoDBTableResource,key_name:str="lock_key")->None:
        if not isinstance(dynamodb_table_resource,DynamoDBTableResource):
            raise AttributeError(f"The provided dynamodb_table_resource parameter is not a valid boto3.dynamodb.table.TableResource (current class {type(dynamodb_table_resource)})") from None
        self.ddb_table = dynamodb_table_resource
        self.key_name = key_name

    def set_if_absent(self,key:str,value:str,ttl:float)->bool:
        now_ms = _now_ms()
        expires_at = now_ms + max(1,int(ttl*1000))
        try:
            self.ddb_table.put_item(Item={self.key_name: key, "token": value, "expires_at": expires_at, "ttl": math.ceil(expires_at/1000)},
                                    ConditionExpression=Or(Attr(self.key_name).not_exists(),Attr("expires_at").lt(now_ms)))
            return True
        except ClientError as ERR:
            if _error_code(ERR) == "ConditionalCheckFailedException":
                return False
            raise RLockBackendError(f"put_item key '{key}' failed: {str(ERR)}") from None
        except BotoCoreError as ERR:
            raise RLockBackendError(f"put_item key '{key}' failed: {str(ERR)}") from None

    def compare_and_delete(self,key:str,token:str)->int:
        try:
            self.ddb_table.delete_item(Key={self.key_name: key},
                                       ConditionExpression=Attr("token").eq(token) & Attr("expires_at").gt(_now_ms()))
            return 1
        except ClientError as ERR:
            if _error_code(ERR) == "ConditionalCheckFailedException":
                return 0
            raise RLockBackendError(f"delete_item key '{key}' failed: {str(ERR)}") from None
        except BotoCoreError as ERR:
            raise RLockBackendError(f"delete_item key '{key}' failed: {str(ERR)}") from None

    def _get_item(self,key:str)->dict|None:
        try:
            item = self.ddb_table.get_item(Key={self.key_name: key},ConsistentRead=True).get("Item")
        except (ClientError,BotoCoreError) as ERR:
            raise RLockBackendError(f"get_item key '{key}' failed: {str(ERR)}") from None
        if item is None or int(item.get("expires_at",0)) <= _now_ms():
            return None
        return item

    def get(self,key:str)->str|None:
        item = self._get_item(key)
        return None if item is None else item.get("token")

    def ttl(self,key:str)->float|None:
        item = self._get_item(key)
        return None if item is None else (int(item["expires_at"]) - _now_ms())/1000

    def ping(self)->bool:
        try:
            self.ddb_table.load()
            return True
        except (ClientError,BotoCoreError) as ERR:
            raise RLockBackendError(f"Failed to access table '{self.ddb_table.name}': {str(ERR)}") from None

def create_lock_table(table_name:str,boto3_client:BaseClient,key_name:str="lock_key",wait:bool=True,verbose:bool=False)->bool:
    """Create an on-demand DynamoDB table for DynamoDBStore, with TTL enabled on the 'ttl' attribute.

    The client must be a DynamoDB client already configured with credentials and region.
    With `wait=True` the function blocks until the table exists before enabling TTL.
    Raises RLockBackendError if any AWS call fails.
    """
    try:
        service_name = boto3_client.meta.service_model.service_name
    except Exception as ERR:
        raise AttributeError(f"The parameter provided in boto3_client does not appear to be a valid AWS client - Error: {str(ERR)}") from None
    if service_name != 'dynamodb':
        raise AttributeError(f"The provided boto3_client is not a client of the DynamoDB service (expected: dynamodb, current: {service_name})") from None
    logger = RLockLogging(verbose=verbose)
    with ElapsedTimer() as elapsed:
        try:
            boto3_client.create_table(TableName=table_name,
                                      AttributeDefinitions=[{'AttributeName':key_name,'AttributeType':'S'}],
                                      KeySchema=[{'AttributeName':key_name,'KeyType':'HASH'}],
                                      BillingMode='PAY_PER_REQUEST')
            logger.info(f"Table '{table_name}' created {elapsed.text()}")
            if wait:
                boto3_client.get_waiter('table_exists').wait(TableName=table_name)
            boto3_client.update_time_to_live(TableName=table_name,TimeToLiveSpecification={'Enabled':True,'AttributeName':'ttl'})
            logger.info(f"TTL enabled on table '{table_name}' {elapsed.text()}")
            return True
        except (ClientError,BotoCoreError) as ERR:
            raise RLockBackendError(f"Failed at create_lock_table ({table_name}): {str(ERR)}") from None

def _now_ms()->int:
    return int(time.time()*1000)

def _error_code(error:ClientError)->str:
    return error.response.get("Error",{}).get("Code","")

def _decode(value):
    return value.decode("utf-8") if isinstance(value,bytes) else value
