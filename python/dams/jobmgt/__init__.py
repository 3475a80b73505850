"""
a persistent queue for the deferred tasks of the DAMS (content ingestion and the propagation of a
Work's visibility and permissions) that runs each task in its own python process.

A :py:class:`JobQueue` applies one kind of task--named by its ``execmodule``, a module providing a
``process()`` function--to the data identifiers submitted to it:

    queue = JobQueue("ingest", "/var/dams/queues/ingest", "dams.jobs.ingest")
    queue.submit("dams0:io0012", ["--notify"])

Each submission is recorded as a :py:class:`Job` state file in the queue's directory, and a
:py:class:`JobRunner` thread launches the jobs via the :py:mod:`dams.jobmgt.exec` envelope.  The
following guarantees apply:

  * everything a job needs is in its state file; the launching and launched processes share nothing
    else (apart from optionally captured log records).
  * at most one job runs for a given data identifier at a time.  A request for data that already has
    a pending or running job is coalesced with it; if the request's arguments differ, the job is
    relaunched with the new arguments when it completes.
  * jobs that were pending or running when the application stopped are resubmitted when the queue is
    next created.  A job may therefore run more than once and must be safe to re-run.

A job's state file holds a dictionary with these properties:

``execmodule``
    the name of the module whose ``process(dataid, config, args, log)`` function carries out the job
``dataid``
    the identifier of the data the job operates on
``state``
    one of PENDING, RUNNING, EXITED, or KILLED
``pid``
    the ID of the process the job was launched as
``config``
    the (JSON-encodable) configuration passed to the job
``args``
    the task-specific arguments passed to the job
``priority``
    the relative priority of the job; jobs with a higher value run first (default: 0)
``reqtime``
    the epoch time (in seconds) that the job was requested
``exitcode``
    the status the job exited with, once complete
``runtime``
    the job's run time in seconds, once complete
``comptime``
    the epoch time (in seconds) that the job completed
``errors``
    messages describing why a job failed or was killed
``relaunch``
    if present, the state of the job to run on the same data after this one completes
"""
import os, sys, json, shutil, time, asyncio, threading, queue, logging
from asyncio import subprocess as sp
from collections import OrderedDict
from collections.abc import Mapping
from copy import deepcopy
from functools import total_ordering
from pathlib import Path
from random import randint
from types import ModuleType
from typing import Iterator, List, Union
from logging import Logger

import psutil

from ..utils import read_json, write_json, LockedFile
from ..config import merge_config
from .. import DAMSException

PENDING = 0
RUNNING = 1
EXITED  = 2
KILLED  = 3
_states = (PENDING, RUNNING, EXITED, KILLED)

EXEC_MODULE = "dams.jobmgt.exec"
RESTORER_FILE = "_restorer.json"

@total_ordering
class Job:
    """
    a queued request to run a task module on a data identifier.  The job's state is held in the
    ``info`` dictionary (see the module documentation for its properties).
    """

    def __init__(self, mod: Union[str, ModuleType], dataid: str, config: Mapping=None, args: List=None,
                 state_data: Mapping=None):
        """
        :param str|module mod:  the module (or name of module) providing the ``process()`` function
                                that carries out the job
        :param str     dataid:  the identifier of the data to process
        :param dict    config:  the configuration to pass to the job
        :param list      args:  the task-specific arguments to pass to the job
        :param dict state_data: the state to restore the job with (e.g. as read from its state file)
        """
        info = deepcopy(state_data) if state_data else { "state": PENDING, "priority": 0 }
        info['execmodule'] = mod if isinstance(mod, str) else mod.__name__
        if dataid:
            info['dataid'] = dataid
        if config:
            info['config'] = deepcopy(config)
        if args:
            info['args'] = list(args)
        if not info.get('reqtime'):
            info['reqtime'] = time.time()

        self.info = info
        self.source = None

    @classmethod
    def from_state(cls, state_data: Mapping):
        return cls(state_data.get('execmodule'), state_data.get('dataid'), state_data=state_data)

    @classmethod
    def from_state_file(cls, statefile: Union[str, Path]):
        """
        restore a Job from its state file; the job's ``source`` is set to the file
        """
        out = cls.from_state(read_json(statefile))
        out.source = Path(statefile)
        return out

    @property
    def data_id(self) -> str:
        return self.info.get('dataid')

    @property
    def request_time(self) -> float:
        return self.info.get('reqtime', 0)

    @property
    def priority(self) -> int:
        return self.info.get('priority', 0)

    @priority.setter
    def priority(self, p):
        self.info['priority'] = p

    @property
    def state(self) -> int:
        return self.info.get('state', PENDING)

    @property
    def succeeded(self) -> bool:
        """
        True if the job has completed with an exit code of zero
        """
        return self.state == EXITED and self.info.get('exitcode') == 0

    @property
    def errors(self) -> List[str]:
        return list(self.info.get('errors', []))

    def update_state(self, st):
        if st not in _states:
            raise ValueError("Unrecognized state value: "+str(st))
        self.info['state'] = st

    def _sortkey(self):
        # higher priority first, then first come, first served
        return (-self.priority, self.request_time)

    def __lt__(self, other):
        return self._sortkey() < other._sortkey()

    def __eq__(self, other):
        return isinstance(other, Job) and self._sortkey() == other._sortkey()

    def save_to(self, outfile):
        """
        write the job's state to the given file.  If the job has no ``source`` yet, it becomes
        this file.
        """
        write_json(self.info, outfile)
        if not self.source:
            self.source = outfile

    def mark_running(self, pid: int):
        self.info['pid'] = pid
        self.info['state'] = RUNNING
        for prop in ("runtime", "exitcode", "comptime", "errors"):
            self.info.pop(prop, None)

    def mark_complete(self, exitcode: int, completetime: float, runtime: float=None,
                      errors: Union[str, List[str]]=None):
        """
        record that the job has exited with the given status
        """
        self.info.update(state=EXITED, exitcode=exitcode, comptime=completetime)
        if runtime is None:
            self.info.pop('runtime', None)
        else:
            self.info['runtime'] = runtime
        if errors:
            self.info['errors'] = [errors] if isinstance(errors, str) else list(errors)

    def mark_killed(self, completetime: float=None, runtime: float=None,
                    errors: Union[str, List[str]]=None):
        """
        record that the job was stopped before it could complete
        """
        self.mark_complete(-1, completetime, runtime, errors)
        self.info['state'] = KILLED

    def enable_relaunch(self, onoff=True):
        """
        set whether this job should be relaunched when it completes; relaunching can only be
        enabled while the job is running.
        """
        if not onoff or self.state == RUNNING:
            self.info['relaunch'] = onoff

    def mark_relaunch(self, args: List[str]=None, config: Mapping=None, priority: int=None):
        """
        request that the job be run again, with the given parameters, after it (and any relaunch
        already requested) completes.  See also :py:meth:`pop_relaunch_job`.
        """
        last = self.info
        while last.get('relaunch'):
            last = last['relaunch']
        relaunch = deepcopy(last)
        relaunch['state'] = PENDING
        for prop, val in (('args', args), ('config', config), ('priority', priority)):
            if val is not None:
                relaunch[prop] = val
        last['relaunch'] = relaunch

    def pop_relaunch_job(self):
        """
        return the Job requested to run after this one (or None if none was requested), clearing
        the request from this job.
        """
        relaunch = self.info.pop('relaunch', None)
        if not relaunch:
            return None
        return Job.from_state(relaunch)


class FatalError(DAMSException):
    """
    an error that prevents a job from completing; ``exitcode`` is the status the job process
    should exit with.
    """
    def __init__(self, msg, exitcode: int=10):
        super(FatalError, self).__init__(msg)
        self.exitcode = exitcode

def job_state_file(dir: Union[str, Path], dataid: str) -> Path:
    """
    return the path to the state file for the job on the given data identifier
    """
    return Path(dir) / (dataid.replace('/', '_') + ".json")

class JobQueue:
    """
    a persistent queue of jobs that each apply the same task module to different data.  Submitting
    a job (via :py:meth:`submit`) records its state file and, by default, triggers the queue's
    :py:class:`JobRunner` to start launching queued jobs.

    This class supports the following configuration parameters:

    ``runner``
         (dict) _optional_.  the configuration for the :py:class:`JobRunner`
    ``default_job_config``
         (dict) _optional_.  the configuration passed to every job; configuration given with a
         submission is merged over it.
    """
    def __init__(self, queuename: str, queuedir: Union[Path, str], execmodule: Union[ModuleType, str],
                 config: Mapping=None, log: Logger=None, resume: bool=True):
        """
        :param str   queuename:  the name of the queue (usually the name of the task)
        :param str    queuedir:  the directory where job state files are kept
        :param str  execmodule:  the module (or its name) that carries out the jobs
        :param bool     resume:  if True, unfinished jobs found in the queue directory are launched
        """
        self.name = queuename
        self.qdir = Path(queuedir)
        os.makedirs(self.qdir, exist_ok=True)
        self.mod = execmodule if isinstance(execmodule, str) else execmodule.__name__
        self.cfg = config or {}
        self.relaunchable = True
        if not log:
            log = logging.getLogger("dams.jobmgt").getChild(queuename)
        self.log = log

        self.pq = queue.PriorityQueue()
        self.runner = JobRunner(self.name, self.qdir, self.pq, self.log.getChild("runner"),
                                self.cfg.get("runner"))
        self._restore_queue(resume)

    @property
    def processed(self) -> int:
        """
        the number of jobs processed since this queue was created
        """
        return self.runner.processed

    @property
    def pending(self) -> int:
        """
        the number of jobs waiting to be launched
        """
        return self.pq.qsize()

    def _state_files(self) -> Iterator[Path]:
        for f in os.listdir(self.qdir):
            if f.endswith(".json") and not f.startswith('.') and not f.startswith('_'):
                yield self.qdir / f

    def _claim_restoration(self) -> bool:
        # only one live process restores a queue directory
        lockfile = self.qdir / RESTORER_FILE
        time.sleep(randint(0, 25) / 100.0)
        if lockfile.is_file():
            claim = read_json(lockfile)
            if claim.get('pid') != os.getpid() and self._restorer_is_running(claim):
                return False
        with LockedFile(lockfile, 'w') as fd:
            json.dump({"pid": os.getpid(), "cmd": sys.argv[0], "args": sys.argv[1:]}, fd)
        return True

    def _restore_queue(self, trigger=True):
        if not self._claim_restoration():
            return

        self.log.info("Checking for unfinished jobs...")
        for statefile in list(self._state_files()):
            try:
                job = Job.from_state_file(statefile)
            except (ValueError, KeyError):
                self.log.warning("Removing unreadable job state file: %s", statefile.name)
                statefile.unlink()
                continue
            if job.state in (EXITED, KILLED) and not job.info.get('relaunch'):
                continue
            if self.is_running(job):
                continue
            self.pq.put_nowait(job)
            self.log.info("Resubmitting job for %s", job.data_id)

        if trigger and not self.pq.empty():
            self.run_queued()

    def _restorer_is_running(self, claim: Mapping) -> bool:
        if not claim.get('pid'):
            return False
        return bool(self._running_cmd(claim['pid']))

    def submit(self, dataid: str, args: List[str]=None, config: Mapping=None,
               priority: int=0, trigger=True) -> Job:
        """
        queue a job to process the data with the given identifier.  If a job for the same data is
        already pending or running, no new job is queued; instead, if the arguments differ, the
        existing job is marked to be relaunched with the new arguments.

        :param str  dataid:  the identifier of the data to operate on
        :param [str]  args:  the task-specific arguments for the job
        :param dict config:  the configuration to pass to the job
        :param int priority: the relative priority of the job
        :param bool trigger: if True, start the runner if it is not already running
        :return:  the queued Job, or the existing Job for the data
        """
        if args is None:
            args = []
        statefile = job_state_file(self.qdir, dataid)
        if statefile.is_file():
            with LockedFile(statefile) as fd:
                job = Job.from_state(json.load(fd))
            if job.state in (PENDING, RUNNING):
                if self.relaunchable and job.info.get('args', []) != args:
                    job.mark_relaunch(args, config, priority)
                    job.save_to(statefile)
                return job

        jcfg = OrderedDict(deepcopy(self.cfg.get('default_job_config', {})))
        if config:
            jcfg = merge_config(config, jcfg)

        job = Job(self.mod, dataid, jcfg, args)
        job.priority = priority
        job.save_to(statefile)
        self.pq.put_nowait(job)
        self.log.debug("Queued %s job for %s", self.name, dataid)
        if trigger:
            self.run_queued()
        return job

    def get_job(self, dataid: str) -> Job:
        """
        return the latest job for the data with the given identifier or None if there is none
        """
        statefile = job_state_file(self.qdir, dataid)
        if not statefile.is_file():
            return None
        return Job.from_state_file(statefile)

    def run_queued(self):
        """
        start launching the queued jobs (in a separate thread) if that is not already happening
        """
        self.runner.trigger()

    def clean(self, age=300):
        """
        remove the state files of jobs that completed more than ``age`` seconds ago (default: 5
        minutes)
        """
        deadline = time.time() - age
        for statefile in list(self._state_files()):
            try:
                job = Job.from_state_file(statefile)
            except (ValueError, KeyError):
                self.log.warning("Unable to read job state file for cleaning: %s", statefile.name)
                continue
            if job.state in (EXITED, KILLED) and not job.info.get('relaunch') and \
               job.info.get('comptime', deadline) <= deadline:
                statefile.unlink()
                self.log.debug("Cleaned up finished job: %s", job.data_id)

    def is_running(self, job: Job) -> bool:
        """
        return True if the given Job is in the RUNNING state _and_ its process can be found running
        the job envelope on this queue
        """
        if job.state != RUNNING or 'pid' not in job.info:
            return False
        cmdline = self._running_cmd(job.info['pid'])
        if not cmdline or not any(EXEC_MODULE in a for a in cmdline):
            return False
        return _option_value(cmdline, "-I") == job.data_id and \
               _option_value(cmdline, "-Q", self.name) == self.name

    def _running_cmd(self, pid: int) -> Union[List[str], None]:
        try:
            return psutil.Process(pid).cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
            return None

def _option_value(cmdline: List[str], opt: str, defval=None):
    if opt not in cmdline:
        return defval
    idx = cmdline.index(opt) + 1
    return cmdline[idx] if idx < len(cmdline) else None

class JobRunner:
    """
    a launcher of the jobs in a queue.  When :py:meth:`trigger` is called, a thread is started that
    launches each queued job in its own process (via :py:data:`EXEC_MODULE`) and waits for it; the
    thread exits when the queue is empty.

    This class supports the following configuration parameters:

    ``python_exe``
         (str) _optional_.  The python executable used to launch jobs (default: the current one).
    ``capture_logging``
         (bool) _optional_.  If True, each job sends its log records to standard output as JSON
         lines, and the runner replays them into its own logging tree.  Otherwise (default), a
         job's standard output is discarded.
    ``logdir``
         (str) _optional_.  A directory where each job writes a log file named after its data
         identifier.
    ``maxsim``
         (int) _optional_.  The maximum number of jobs to run simultaneously (default: 5).
    """

    def __init__(self, qname: str, jobdir: Path, jobq: queue.Queue, log: Logger=None, config: Mapping=None):
        self.qname = qname
        self.jdir = jobdir
        self.jq = jobq
        self.runthread = None
        if not log:
            log = logging.getLogger("dams.jobmgt.runner").getChild(qname)
        self.log = log
        if config is None:
            config = {}
        self.cfg = config
        self._trigger_lock = threading.Lock()
        self.processed = 0

    def _command_for(self, job: Job) -> List[str]:
        pyexe = self.cfg.get("python_exe", sys.executable or "python")
        if not os.path.isabs(pyexe):
            pyexe = shutil.which(pyexe) or pyexe
        cmd = [pyexe, "-m", EXEC_MODULE, "-Q", self.qname, "-I", job.data_id, "-d", str(self.jdir)]
        if self.cfg.get('capture_logging'):
            cmd.append("-L")
        if self.cfg.get('logdir'):
            cmd.extend(["-l", os.path.join(self.cfg['logdir'], job.data_id.replace(':', '_')+".log")])
        return cmd

    def _replay_log_line(self, line: str) -> bool:
        try:
            rec = json.loads(line)
        except ValueError:
            return False
        if not isinstance(rec, Mapping):
            return False
        logrec = logging.LogRecord(rec.get("name", self.log.name), rec.get("level", logging.INFO),
                                   rec.get("pathname", ""), int(rec.get("lineno", -1)),
                                   rec.get("msg", ""), [], None)
        logging.getLogger(logrec.name).handle(logrec)
        return True

    async def _relay_output(self, proc):
        # non-JSON output (e.g. a traceback) is gathered and logged as a warning
        other = []
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            line = line.decode('utf8').rstrip()
            if line.startswith('{') and self._replay_log_line(line):
                if other:
                    self.log.warning("\n".join(other))
                    other = []
            elif line:
                other.append(line)
        if other:
            self.log.warning("\n".join(other))

    async def _launch_job(self, job: Job):
        if job.source:
            job.mark_running(-1)    # the job process records its own pid
            job.save_to(job.source)

        capture = bool(self.cfg.get('capture_logging'))
        proc = await asyncio.create_subprocess_exec(*self._command_for(job), stdin=sp.DEVNULL,
                                                    stderr=sp.STDOUT,
                                                    stdout=sp.PIPE if capture else sp.DEVNULL)
        if capture:
            await self._relay_output(proc)
        await proc.wait()
        return proc

    async def _work(self) -> int:
        done = 0
        while True:
            try:
                job = self.jq.get_nowait()
            except queue.Empty:
                return done

            proc = None
            try:
                if job.source and job.source.is_file():
                    job = Job.from_state_file(job.source)
                proc = await self._launch_job(job)
                done += 1
                if job.source and job.source.is_file():
                    job = Job.from_state_file(job.source)
                relaunch = job.pop_relaunch_job()
                if relaunch:
                    if job.source:
                        relaunch.save_to(job.source)
                    self.jq.put_nowait(relaunch)
            except asyncio.CancelledError:
                self.log.warning("%s runner cancelled; stopping job on %s", self.qname, job.data_id)
                if proc and proc.returncode is None:
                    proc.terminate()
                raise
            except Exception as ex:
                self.log.exception("Failed to launch %s job: %s", job.data_id, str(ex))
            else:
                if proc.returncode != 0:
                    self.log.warning("%s job exited with status=%d: %s", job.data_id, proc.returncode,
                                     "\n".join(job.errors or ['??']))
                else:
                    self.log.debug("%s job exited successfully", job.data_id)

    async def _drain_queue(self) -> int:
        workers = [asyncio.create_task(self._work()) for i in range(self.cfg.get("maxsim", 5))]
        return sum(await asyncio.gather(*workers))

    def _run(self):
        if self.jq.empty():
            return
        try:
            self.log.debug("Starting queue processing with %d job(s)", self.jq.qsize())
            processed = asyncio.run(self._drain_queue())
            self.log.debug("Finished processing %d job(s) from queue", processed)
            self.processed += processed
        except Exception as ex:
            self.log.exception("Failure managing queue execution: %s", str(ex))

    def trigger(self):
        """
        start the runner thread if there are queued jobs and it is not already running
        """
        with self._trigger_lock:
            if not self.jq.empty() and not self.is_running():
                self.runthread = threading.Thread(target=self._run, name=self.qname)
                self.runthread.start()

    def is_running(self) -> bool:
        """
        return True if the runner thread is running
        """
        return bool(self.runthread and self.runthread.is_alive())
