"""
Utility functions and classes for reading and writing the JSON files that back the file-based
stores and the job queues.  Access to a file is serialized, across both threads and processes,
via a companion lock file managed by :py:mod:`filelock`.
"""
from collections import OrderedDict
import json, os

import filelock

from .. import DAMSException
from .logging import blab, utilslog
log = utilslog

__all__ = [ 'LockedFile', 'read_json', 'write_json', 'StateException' ]

class StateException(DAMSException):
    """
    an exception indicating that a file or other resource is in a state that does not allow the
    requested operation
    """
    pass

def lockfile_for(filename) -> str:
    """
    return the path to the lock file that guards the given file.  The lock file is a hidden file
    in the same directory.
    """
    dirname, base = os.path.split(os.path.abspath(filename))
    return os.path.join(dirname, "." + base + ".lock")

class LockedFile(object):
    """
    a file that is held open under an exclusive lock.  The easiest way to use this class is via
    the with statement:

    .. code-block:: python

       with LockedFile(filename) as fd:
           data = json.load(fd)

       with LockedFile(filename, 'w') as fd:
           json.dump(data, fd)
    """

    def __init__(self, filename, mode='r', timeout: float = -1):
        self.mode = mode
        self._fname = filename
        self._fo = None
        self._lock = filelock.FileLock(lockfile_for(filename), timeout=timeout)

    @property
    def fo(self):
        """
        the open file object or None if the file is not currently open
        """
        return self._fo

    def open(self, mode=None):
        """
        acquire the lock and open the file.  If mode is not provided, the mode will be the value
        set when this object was created.
        """
        if self._fo:
            raise StateException(str(self._fname)+": file is already open")
        if mode:
            self.mode = mode
        dirname = os.path.dirname(os.path.abspath(self._fname))
        if not os.path.isdir(dirname):
            raise StateException("%s: parent directory does not exist" % str(self._fname))

        self._lock.acquire()
        try:
            self._fo = open(self._fname, self.mode)
        except Exception:
            self._lock.release()
            raise
        return self._fo

    def close(self):
        if not self._fo:
            return
        try:
            self._fo.close()
        finally:
            self._fo = None
            self._lock.release()

    def __enter__(self):
        return self.open()

    def __exit__(self, e1, e2, e3):
        self.close()
        return False

def read_json(jsonfile):
    """
    read the JSON data from the specified file while holding its lock.  Objects are returned as
    OrderedDicts.

    :raise IOError:  if there is an error while acquiring the lock or reading the file contents
    :raise ValueError:  if JSON format errors are detected.
    """
    with LockedFile(jsonfile) as fd:
        out = json.load(fd, object_pairs_hook=OrderedDict)
    blab(log, "read %s", str(jsonfile))
    return out

def write_json(jsdata, destfile, indent=4):
    """
    write out the given JSON data into a file with pretty print formatting while holding its lock

    :param dict jsdata:    the JSON data to write
    :param str  destfile:  the path to the file to write the data to
    :param int  indent:    the number of characters to use for indentation (default: 4).
    :raise StateException:  if the data could not be written
    """
    try:
        with LockedFile(destfile, 'w') as fd:
            json.dump(jsdata, fd, indent=indent, separators=(',', ': '))
    except Exception as ex:
        raise StateException("{0}: Failed to write JSON data to file: {1}"
                             .format(destfile, str(ex)), cause=ex)
    blab(log, "wrote %s", str(destfile))
