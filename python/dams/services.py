"""
The collection of collaborators that the FileSet actors and the deferred tasks need in order to do 
their work, assembled from the application configuration.
"""
import os, logging
from collections.abc import Mapping
from copy import deepcopy
from logging import Logger

from .config import ConfigurationException, load_from_file
from .store import create_store, ResourceStore
from .store.binaries import BinaryStore
from .locking import LockManager
from .callbacks import CallbackDispatcher, DEFAULT_HOOKS
from .notifier import Notifier, create_notifier
from .tasks import TaskQueue, create_task_queue

class RepositoryServices(object):
    """
    a container for the repository's shared services:

    ``store``
         the :py:class:`~dams.store.ResourceStore` holding Works, FileSets, and their descriptors
    ``binaries``
         the :py:class:`~dams.store.binaries.BinaryStore` holding FileSet content
    ``locks``
         the :py:class:`~dams.locking.LockManager` that serializes updates to Works
    ``tasks``
         the :py:class:`~dams.tasks.TaskQueue` for deferred work
    ``callbacks``
         the :py:class:`~dams.callbacks.CallbackDispatcher` for lifecycle hooks
    ``notifier``
         the :py:class:`~dams.notifier.Notifier` for telling users about deferred outcomes

    Any service may be provided directly to the constructor; the rest are created from the 
    configuration.
    """

    def __init__(self, config: Mapping, store: ResourceStore = None, binaries: BinaryStore = None,
                 locks: LockManager = None, callbacks: CallbackDispatcher = None,
                 notifier: Notifier = None, tasks: TaskQueue = None, log: Logger = None):
        if config is None:
            config = {}
        self.config = config
        if not log:
            log = logging.getLogger("dams")
        self.log = log

        if not store:
            store = create_store(config.get('store', {}), log.getChild("store"))
        self.store = store

        if not binaries:
            bcfg = config.get('binaries', {})
            if not bcfg.get('root_dir'):
                raise ConfigurationException("binaries.root_dir: required parameter is missing")
            os.makedirs(bcfg['root_dir'], exist_ok=True)
            binaries = BinaryStore(bcfg['root_dir'], log.getChild("binaries"))
        self.binaries = binaries

        if not locks:
            locks = LockManager(config.get('locking', {}), log.getChild("locking"))
        self.locks = locks

        if not callbacks:
            callbacks = CallbackDispatcher(config.get('callbacks', {}).get('enabled', DEFAULT_HOOKS),
                                           log.getChild("callbacks"))
        self.callbacks = callbacks

        if not notifier:
            notifier = create_notifier(config.get('notifier', {}), log.getChild("notifier"))
        self.notifier = notifier

        if not tasks:
            tasks = create_task_queue(config.get('tasks', {}), self, log.getChild("tasks"))
        self.tasks = tasks

    @property
    def ability_config(self) -> Mapping:
        return self.config.get('ability', {})

    @classmethod
    def from_config(cls, config, log: Logger = None, inline_tasks: bool = False):
        """
        create the services from a configuration dictionary or the path to a configuration file
        :param bool inline_tasks:  if True, any tasks requested will be run in the current process
                                   regardless of the configured task queue type.
        """
        if isinstance(config, str):
            config = load_from_file(config)
        if inline_tasks:
            config = deepcopy(config)
            config['tasks'] = { "type": "inline" }
        return cls(config, log=log)
