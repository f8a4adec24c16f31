#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
 ###   #      ##    ###  #  #
 #  #  #     #  #  #     # #
 ###   #     #  #  #     ##
 # #   #     #  #  #     # #
 #  #  ####   ##    ###  #  #

Exceptions, timing and logging shared by the lock manager and the store adapters.

License: MIT
"""
from __future__ import annotations
import time, math
from datetime import datetime, timedelta

__all__ = ['RLockException','RLockConfigError','RLockBackendError','RLockTimeoutError','RLockCancelledError',
           'RLockWarmUpException','RLockScriptError','ElapsedTimer','RLockLogging']

class RLockException(Exception):...                   # Base class for every error raised by rlock.
class RLockConfigError(RLockException,ValueError):... # Raised when a lock configuration is malformed.
class RLockBackendError(RLockException):...           # Raised by store adapters when the backend cannot be reached.
class RLockTimeoutError(RLockException):...           # Raised by RLock.lock() when the lock was not obtained in time.
class RLockCancelledError(RLockTimeoutError):...      # Raised by RLock.lock() when the cancel event stopped the acquisition.
class RLockWarmUpException(RLockException):...        # Raised when the warmup ping fails.
class RLockScriptError(RLockException):...            # Raised when the release script cannot be registered.

class ElapsedTimer:
    """A simple context manager to measure the elapsed time in seconds.

       Usage:
            with ElapsedTimer() as elapsed:
                print(elapsed.text(decimal_places=6, end_text=" seconds.", with_brackets=False))
    """
    def __enter__(self):
        self.start = time.monotonic()
        self.time = None
        return self
    def __exit__(self, type, value, traceback):
        self.time = time.monotonic() - self.start
    def time_as_float(self,decimal_places:int=6)->float:
        return math.trunc((time.monotonic()-self.start)*(10**decimal_places))/(10**decimal_places)
    def text(self,decimal_places:int=6,end_text:str=" sec",with_brackets=True)->str:
        elapsed = self.time if self.time is not None else time.monotonic() - self.start
        timer_string = f"[{f'%.{decimal_places}f'%(elapsed)}{end_text}]"
        return timer_string if with_brackets else timer_string[1:-1]

class RLockLogging():
    """Class for logging. Create a new class with the same methods and attributes to customize the logging mechanism.

        class myLoggingClass(RLockLogging):
            def info(self,msg,prefix:str=None)->None:
                pass # customize as you wish
            def debug(self,msg,prefix:str=None)->None:
                pass # customize as you wish
            def error(self,msg,prefix:str=None)->None:
                pass # customize as you wish

    Then override `_get_logger(self)` in a subclass of RLock returning your class.
    """
    def __init__(self,verbose:bool=False,debug:bool=False,errors:bool=True,
                 info_prefix="[INFO] ",debug_prefix="[DEBUG] ",error_prefix="[ERROR] ",with_date:bool=True)->None:
        self.verbose = verbose
        self.debug_enabled = debug
        self.errors = errors
        self.info_prefix = info_prefix
        self.debug_prefix = debug_prefix
        self.error_prefix = error_prefix
        self.__with_date = with_date
        self.info = self.info if self.verbose else self.__logEmpty
        self.debug = self.debug if self.debug_enabled else self.__logEmpty
        self.error = self.error if self.errors else self.__logEmpty
    def info(self,msg,prefix:str=None)->None:
        print(f"{self.__get_date()}[RLOCK] {prefix if prefix is not None else self.info_prefix}{msg}",flush=True)
    def debug(self,msg,prefix:str=None)->None:
        print(f"{self.__get_date()}[RLOCK] {prefix if prefix is not None else self.debug_prefix}{msg}",flush=True)
    def error(self,msg,prefix:str=None)->None:
        print(f"{self.__get_date()}[RLOCK] {prefix if prefix is not None else self.error_prefix}{msg}",flush=True)
    def __logEmpty(self,msg,prefix:str="")->None:...
    def __get_date(self)->str:
        if not self.__with_date: return ''
        A = datetime.now()
        if A.microsecond%1000>=500:A=A+timedelta(milliseconds=1)
        D = A.strftime('%y/%m/%d %H:%M:%S.%f')[:-3]
        return D+" "
