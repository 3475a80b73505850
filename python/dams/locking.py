"""
Exclusive locks that serialize read-modify-write updates to shared resources--in particular, the 
member list of a Work.

A :py:class:`LockManager` hands out locks by key (e.g. a Work's identifier).  The locks are file 
locks so that they exclude not only other threads but also other processes (including queued jobs) 
sharing the same lock directory.  Locks on different keys never contend with one another.  
Acquisition waits at most a configured number of seconds before failing with a 
:py:class:`LockTimeoutError`.
"""
import os, re, hashlib, tempfile, logging
from contextlib import contextmanager
from collections.abc import Mapping
from pathlib import Path
from typing import Callable
from logging import Logger

import filelock

from . import DAMSException
from .config import get_param
from .utils.logging import blab

DEF_LOCK_TIMEOUT = 30.0
DEF_POLL_INTERVAL = 0.05
_unsafe_re = re.compile(r'[^\w\-\.]')

class LockTimeoutError(DAMSException):
    """
    an exception indicating that an exclusive lock could not be acquired within the allowed time
    """
    def __init__(self, key: str, timeout: float, message: str = None, cause=None):
        if not message:
            message = "Timed out after %s seconds waiting for lock on %s" % (timeout, key)
        super(LockTimeoutError, self).__init__(message, cause)
        self.key = key
        self.timeout = timeout

class LockManager(object):
    """
    a factory for exclusive, per-key locks.  

    This class supports the following configuration parameters:

    ``lock_dir``
         (str) _optional_.  The directory where lock files are created.  All processes that must 
         exclude each other must use the same directory.  Default: a "dams-locks" directory under
         the system's temporary directory.
    ``timeout``
         (float) _optional_.  The maximum number of seconds to wait for a lock (default: 30).  A 
         negative value means wait indefinitely.
    ``poll_interval``
         (float) _optional_.  The number of seconds to wait between attempts to acquire a lock 
         (default: 0.05).
    """

    def __init__(self, config: Mapping = None, log: Logger = None):
        if config is None:
            config = {}
        self.cfg = config
        lockdir = config.get('lock_dir')
        if not lockdir:
            lockdir = os.path.join(tempfile.gettempdir(), "dams-locks")
        self.lockdir = Path(lockdir)
        os.makedirs(self.lockdir, exist_ok=True)

        self.timeout = get_param(config, 'timeout', float, DEF_LOCK_TIMEOUT)
        self.poll_interval = get_param(config, 'poll_interval', float, DEF_POLL_INTERVAL)
        if not log:
            log = logging.getLogger("dams.locking")
        self.log = log

    def lockfile_for(self, key: str) -> Path:
        """
        return the path to the lock file used for the given key
        """
        name = _unsafe_re.sub('_', key)
        if len(name) > 100:
            name = name[:60] + "-" + hashlib.md5(key.encode('utf-8')).hexdigest()
        return self.lockdir / ("lock_" + name + ".lock")

    @contextmanager
    def lock_for(self, key: str, timeout: float = None):
        """
        acquire an exclusive lock on the given key for the duration of a ``with`` block.  The lock
        is released on all exits from the block, including via an exception.

        .. code-block:: python

           with locks.lock_for(work.id):
               work.member_ids.append(file_set.id)
               store.save(work)

        :param str     key:  the name of the thing being locked
        :param float timeout: the maximum number of seconds to wait; if not given, the configured
                             timeout is used.
        :raise LockTimeoutError:  if the lock could not be acquired in time
        """
        if timeout is None:
            timeout = self.timeout
        lock = filelock.FileLock(str(self.lockfile_for(key)))
        try:
            lock.acquire(timeout=timeout, poll_interval=self.poll_interval)
        except filelock.Timeout as ex:
            self.log.warning("Failed to acquire lock on %s within %s seconds", key, timeout)
            raise LockTimeoutError(key, timeout, cause=ex)
        blab(self.log, "acquired lock on %s", key)
        try:
            yield lock
        finally:
            lock.release()
            blab(self.log, "released lock on %s", key)

    def with_lock(self, key: str, func: Callable, *args, **kwargs):
        """
        call the given function while holding an exclusive lock on the given key and return its 
        result.  Extra arguments are passed to the function.
        :raise LockTimeoutError:  if the lock could not be acquired; the function is not called
        """
        with self.lock_for(key):
            return func(*args, **kwargs)
