"""
The boundary through which the FileSet actors defer work--content ingestion and the propagation of
a Work's visibility and permissions onto its members--to be carried out after the request that 
triggered it has returned.

A task is named by a key in :py:data:`TASKS` which maps to a module providing two functions:

``run(services, dataid, args, log)``
     carry out the task in the current process using the given 
     :py:class:`~dams.services.RepositoryServices`
``process(dataid, config, args, log)``
     carry out the task in a separate process (as launched by :py:mod:`dams.jobmgt.exec`), 
     building the services from the given configuration

Tasks may run more than once for the same data; each task is written to be safely re-runnable.
"""
import os, time, importlib, logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Mapping
from copy import deepcopy
from pathlib import Path
from typing import List
from logging import Logger

from .jobmgt import Job, JobQueue
from .config import ConfigurationException

TASKS = OrderedDict([
    ("ingest",              "dams.jobs.ingest"),
    ("visibility_copy",     "dams.jobs.visibility"),
    ("inherit_permissions", "dams.jobs.permissions")
])

def module_for(task: str) -> str:
    """
    return the name of the module that implements the named task
    :raise ValueError:  if the task name is not recognized
    """
    if task not in TASKS:
        raise ValueError("Unrecognized task name: " + str(task))
    return TASKS[task]

class TaskQueue(ABC):
    """
    the interface for submitting deferred tasks
    """

    @abstractmethod
    def enqueue(self, task: str, dataid: str, args: List[str] = None, priority: int = 0) -> Job:
        """
        request that a task be applied to the data with the given identifier
        :param str   task:  the name of the task (a key in :py:data:`TASKS`)
        :param str dataid:  the identifier of the resource the task operates on
        :param list  args:  task-specific arguments
        :param int priority: the relative priority of the task (higher runs sooner)
        :return:  a handle for the submitted task
        """
        raise NotImplementedError()

class InlineTaskQueue(TaskQueue):
    """
    a TaskQueue that runs each task immediately in the current process.  The outcome is recorded 
    in the returned Job: an exit code of 0 indicates success.  Failures are logged rather than 
    raised, just as they would be for a task run in a separate process.
    """

    def __init__(self, services, log: Logger = None):
        self.services = services
        if not log:
            log = logging.getLogger("dams.tasks")
        self.log = log

    def enqueue(self, task: str, dataid: str, args: List[str] = None, priority: int = 0) -> Job:
        modname = module_for(task)
        if args is None:
            args = []
        job = Job(modname, dataid, args=args)
        job.priority = priority
        mod = importlib.import_module(modname)

        start = time.time()
        job.mark_running(os.getpid())
        try:
            mod.run(self.services, dataid, args, self.log.getChild(task))
        except Exception as ex:
            self.log.exception("%s task on %s failed: %s", task, dataid, str(ex))
            end = time.time()
            job.mark_complete(11, end, end - start, [str(ex)])
        else:
            end = time.time()
            job.mark_complete(0, end, end - start)
            self.log.debug("%s task on %s completed", task, dataid)
        return job

class ProcessTaskQueue(TaskQueue):
    """
    a TaskQueue that persists each request in a :py:class:`~dams.jobmgt.JobQueue` and runs it in 
    a separate process.  A separate JobQueue is kept for each task type.  Because the task runs in 
    a different process, the store configured for the application must be a persistent one 
    (i.e. not "inmem").

    This class supports the following configuration parameters:

    ``queue_dir``
         (str) _required_.  The directory where the queues' job state files are kept
    ``runner``
         (dict) _optional_.  The configuration for each queue's :py:class:`~dams.jobmgt.JobRunner`
    """

    def __init__(self, config: Mapping, jobconfig: Mapping = None, log: Logger = None):
        """
        :param dict    config:  the task queue configuration
        :param dict jobconfig:  the configuration to pass to each task process; this is normally 
                                the full application configuration.
        """
        if not config.get('queue_dir'):
            raise ConfigurationException("tasks.queue_dir: required parameter for process queue is missing")
        self.qdir = Path(config['queue_dir'])
        self.cfg = config
        if jobconfig is None:
            jobconfig = {}
        self.jobcfg = jobconfig
        if not log:
            log = logging.getLogger("dams.tasks")
        self.log = log
        self._queues = {}

    def queue_for(self, task: str) -> JobQueue:
        """
        return the JobQueue that executes the given task, creating it if necessary
        """
        if task not in self._queues:
            qcfg = { "runner": self.cfg.get("runner", {}),
                     "default_job_config": deepcopy(self.cfg.get("default_job_config", {})) }
            self._queues[task] = JobQueue(task, self.qdir / task, module_for(task), qcfg,
                                          self.log.getChild(task))
        return self._queues[task]

    def enqueue(self, task: str, dataid: str, args: List[str] = None, priority: int = 0) -> Job:
        job = self.queue_for(task).submit(dataid, args, self.jobcfg, priority)
        self.log.info("Queued %s task for %s", task, dataid)
        return job

def create_task_queue(config: Mapping, services, log: Logger = None) -> TaskQueue:
    """
    create the TaskQueue selected by the ``type`` configuration parameter (one of "inline", the
    default, or "process")
    """
    if config is None:
        config = {}
    qtype = config.get('type', 'inline')
    if qtype == 'inline':
        return InlineTaskQueue(services, log)
    if qtype == 'process':
        return ProcessTaskQueue(config, services.config, log)
    raise ConfigurationException("tasks.type: unsupported task queue type: " + str(qtype))
