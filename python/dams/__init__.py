"""
dams:  support for a Digital Asset Management System in which deposited *Works* aggregate *FileSets*,
each holding the binary content of one logical file and its revisions.

The heart of this package is the :py:mod:`~dams.actors` subpackage, which ingests content into 
FileSets, applies their metadata, attaches them to their parent Work, and tears them down again.  
The supporting subpackages provide the backend stores (:py:mod:`~dams.store`), the job queue used 
to defer long-running work (:py:mod:`~dams.jobmgt` and :py:mod:`~dams.tasks`), and the locking 
(:py:mod:`~dams.locking`) that serializes updates to a Work's membership.
"""
try:
    from .version import __version__
except ImportError:
    __version__ = "(unset)"

_DAMSYSNAME = "Digital Asset Management System"
_DAMSYSABBREV = "DAMS"

class SystemInfoMixin(object):
    """
    a mixin providing identifying information about the system a class belongs to.  This information
    is typically used to name loggers and to annotate messages.
    """
    def __init__(self, sysname, sysabbrev, subsysname, subsysabbrev, version):
        self._sysname = sysname
        self._sysabbrev = sysabbrev
        self._subsysname = subsysname
        self._subsysabbrev = subsysabbrev
        self._sysversion = version

    @property
    def system_name(self):
        return self._sysname

    @property
    def system_abbrev(self):
        return self._sysabbrev

    @property
    def subsystem_name(self):
        return self._subsysname

    @property
    def subsystem_abbrev(self):
        return self._subsysabbrev

    @property
    def system_version(self):
        return self._sysversion

class DAMSystem(SystemInfoMixin):
    """
    A SystemInfoMixin representing the overall DAM system.
    """
    def __init__(self, subsysname="", subsysabbrev=""):
        super(DAMSystem, self).__init__(_DAMSYSNAME, _DAMSYSABBREV, subsysname, subsysabbrev, __version__)

system = DAMSystem()

class DAMSException(Exception):
    """
    A general base class for exceptions that occur while using DAMS infrastructure or applications.
    The optional ``cause`` captures an underlying exception that triggered this one; ``sys`` 
    identifies the (sub)system where the error occurred.
    """
    def __init__(self, message, cause=None, sys=None):
        super(DAMSException, self).__init__(message)
        self.cause = cause
        self.system = sys
