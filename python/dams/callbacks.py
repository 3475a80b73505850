"""
A registry of named hooks that lets external code react to FileSet lifecycle events without the 
actors depending on it.

Hooks must be enabled before they can be set.  The default set of enabled hooks is 
:py:data:`DEFAULT_HOOKS`:

``after_create_fileset``
     called with (file_set, user) after a FileSet is attached to its Work
``after_revert_content``
     called with (file_set, user, revision_id) after content is reverted to an earlier revision
``after_update_content``
     called with (file_set, user) after updated content is ingested
``after_destroy``
     called with (file_set_id, user) after a FileSet is deleted
``after_import_url_failure``
     called with (file_set, user) when content fails to be imported from a URL
``after_fixity_check_failure``
     called with (file_set, checksum_audit_log) when a fixity check fails
"""
import logging
from collections.abc import Iterable
from typing import Callable
from logging import Logger

from . import DAMSException

DEFAULT_HOOKS = ("after_create_fileset", "after_revert_content", "after_update_content",
                 "after_destroy", "after_import_url_failure", "after_fixity_check_failure")

class HookNotEnabled(DAMSException):
    """
    an exception indicating an attempt to set or run a hook that has not been enabled
    """
    def __init__(self, hook, message=None):
        if not message:
            message = "Callback hook is not enabled: " + str(hook)
        super(HookNotEnabled, self).__init__(message)
        self.hook = hook

class CallbackDispatcher(object):
    """
    a registry of callables keyed by hook name.  Running a hook that has no callable set does 
    nothing.  A failure raised by a callable is logged but does not propagate to the code that 
    triggered the hook.
    """

    def __init__(self, enabled: Iterable = DEFAULT_HOOKS, log: Logger = None):
        self._enabled = set(enabled)
        self._callbacks = {}
        if not log:
            log = logging.getLogger("dams.callbacks")
        self.log = log

    def enable(self, *hooks):
        """
        enable the given hooks so that callables can be set for them
        """
        self._enabled.update(hooks)

    def is_enabled(self, hook: str) -> bool:
        return hook in self._enabled

    def set(self, hook: str, func: Callable):
        """
        set the callable to be called when the given hook is run, replacing any previously set
        :raise HookNotEnabled:  if the hook has not been enabled
        """
        if not self.is_enabled(hook):
            raise HookNotEnabled(hook)
        self._callbacks[hook] = func

    def is_set(self, hook: str) -> bool:
        return hook in self._callbacks

    def clear(self, hook: str):
        self._callbacks.pop(hook, None)

    def run(self, hook: str, *args, **kwargs):
        """
        call the callable set for the given hook, if any, with the given arguments.  Its return 
        value is ignored.
        :raise HookNotEnabled:  if the hook has not been enabled
        """
        if not self.is_enabled(hook):
            raise HookNotEnabled(hook)
        func = self._callbacks.get(hook)
        if not func:
            return
        try:
            func(*args, **kwargs)
        except Exception as ex:
            self.log.exception("%s callback failed: %s", hook, str(ex))
