"""
 ###   #      ##    ###  #  #
 #  #  #     #  #  #     # #
 ###   #     #  #  #     ##
 # #   #     #  #  #     # #
 #  #  ####   ##    ###  #  #

RLock is a distributed mutual-exclusion lock over a shared key-value store (Redis,
or DynamoDB for stores without server-side scripting). Ownership is proved with a
unique token per acquisition, the record TTL bounds a crashed holder, and the
release deletes the record only if the token still matches.

Version: 1.0.0
License: MIT

"""
from rlock.base import *
from rlock.stores import *
from rlock.util import *
from rlock.rlock import *

__appname__ = "RLock - distributed locks over a key-value store"
__version__ = "1.0.0"
