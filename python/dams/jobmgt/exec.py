"""
the command-line envelope used by :py:class:`~dams.jobmgt.JobRunner` to carry out a single queued
task (an ingest, a visibility copy, etc.) in its own python process.

The envelope reads the job's state file, calls the ``process()`` function of the task module named
there, and records the outcome back into the state file.  A failure of the envelope itself is
reported through the process exit code:

  ==  ===========================================================
  11  the task's ``process()`` function raised an exception
  13  the command-line arguments or job state could not be handled
  20  the task module's ``process`` attribute is not callable
  21  the task module has no ``process()`` function
  22  the task module could not be imported
  23  the job state does not name a task module
  24  the job state file could not be read
  25  the job directory does not exist
  26  no job directory was given
  27  no data identifier was given
  ==  ===========================================================
"""
import sys, os, json, logging, importlib, time, signal
from argparse import ArgumentParser
from pathlib import Path
from typing import Tuple
import traceback as tb

from dams import config
from dams.jobmgt import Job, FatalError, job_state_file

PROGNAME = "dams-task"

class _JSONLineFormatter(logging.Formatter):
    # one JSON object per record; JobRunner re-injects these into its own logging tree
    def format(self, record):
        return json.dumps({ "name": record.name, "created": record.created, "level": record.levelno,
                            "msg": record.getMessage(), "lineno": record.lineno,
                            "pathname": record.pathname })

def define_options(progname):
    """
    return an ArgumentParser configured with the options for running a queued task
    """
    parser = ArgumentParser(progname, None, "carry out a queued DAMS task described by its job state file")

    parser.add_argument('-I', '--data-id', type=str, metavar="ID", dest='id',
                        help="the identifier of the resource the task operates on")
    parser.add_argument('-Q', '--queue-name', type=str, metavar="NAME", dest='queue', default=PROGNAME,
                        help="the name of the task queue that launched this process")
    parser.add_argument('-d', '--job-dir', type=str, metavar="DIR", dest='jobdir',
                        default=os.environ.get('DAMS_JOB_DIR'),
                        help="the directory holding the queue's job state files (default: $DAMS_JOB_DIR)")
    parser.add_argument('-L', '--log-out', action='store_true', dest='logout',
                        help="write log records as JSON lines to standard out for capture by the runner")
    parser.add_argument('-l', '--log-file', type=str, metavar="FILE", dest='logfile', default=None,
                        help="also write log messages to FILE")

    return parser

def _load_job(opts, args) -> Tuple[Job, Path]:
    if not opts.id:
        raise FatalError("Missing required data identifier (-I): " + ' '.join(args), 27)
    if not opts.jobdir:
        raise FatalError("%s/%s: Missing required job directory (-d)" % (opts.queue, opts.id), 26)
    jobdir = Path(opts.jobdir)
    if not jobdir.is_dir():
        raise FatalError("%s/%s: job directory not found: %s" % (opts.queue, opts.id, str(jobdir)), 25)

    statefile = job_state_file(jobdir, opts.id)
    try:
        job = Job.from_state_file(statefile)
    except Exception as ex:
        raise FatalError("%s: unable to read job state: %s" % (str(statefile), str(ex)), 24)
    try:
        job.mark_running(os.getpid())
        job.save_to(statefile)
    except Exception as ex:
        raise FatalError("%s: unable to record running state: %s" % (str(statefile), str(ex)), 13)
    return job, statefile

def _setup_logging(cfg, opts):
    if opts.logfile:
        cfg['logfile'] = opts.logfile
    if cfg.get('logfile'):
        config.configure_log(config=cfg)

    if opts.logout:
        hdlr = logging.StreamHandler(sys.stdout)
        hdlr.setFormatter(_JSONLineFormatter())
        hdlr.setLevel(logging.DEBUG)
        root = logging.getLogger()
        root.addHandler(hdlr)
        level = cfg.get('loglevel', logging.DEBUG)
        if not isinstance(level, int):
            level = config._log_levels_byname.get(str(level), logging.DEBUG)
        root.setLevel(level)

def _process_func_for(job):
    modname = job.info.get('execmodule')
    if not modname:
        raise FatalError("Job state does not name a task module", 23)
    try:
        mod = importlib.import_module(modname)
    except ImportError as ex:
        raise FatalError("Unable to import task module: " + str(ex), 22)

    process = getattr(mod, 'process', None)
    if process is None:
        raise FatalError(modname + ": Missing process() function", 21)
    if not callable(process):
        raise FatalError(modname + ": process symbol is not callable", 20)
    return process, getattr(mod, 'LOGNAME', None)

def main(args):
    """
    run the task described by the job state file selected by the given command-line arguments
    :raise FatalError:  if the task could not be run or it failed
    """
    parser = define_options(PROGNAME)
    try:
        opts = parser.parse_args(args)
    except SystemExit:
        raise FatalError("Failed to parse arguments: " + ' '.join(args), 13)

    job, statefile = _load_job(opts, args)
    cfg = job.info.get("config", {})

    errors = []
    exitcode = 0
    killed = False
    log = logging.getLogger(opts.queue).getChild(job.data_id)
    start = time.time()
    try:
        _setup_logging(cfg, opts)
        process, logname = _process_func_for(job)
        if logname:
            log = logging.getLogger(opts.queue).getChild(logname).getChild(job.data_id)

        def on_signal(sig, stack):
            end = time.time()
            job.mark_killed(end, end-start, errors=["Caught signal=%s requesting interruption" % sig])
            job.save_to(statefile)
        signal.signal(signal.SIGHUP, on_signal)
        signal.signal(signal.SIGTERM, on_signal)

        start = time.time()
        process(opts.id, cfg, job.info.get('args', []), log)

    except KeyboardInterrupt:
        log.error("task interrupted from the keyboard")
        errors.append("keyboard interrupt")
        killed = True
    except SystemExit as ex:
        exitcode = ex.code
    except FatalError as ex:
        errors.append(str(ex))
        exitcode = ex.exitcode
        log.critical(str(ex))
        raise
    except Exception as ex:
        exitcode = 11
        errors.append(str(ex))
        log.exception("task failed: %s", str(ex))
        raise FatalError("Failure occurred during processing: " + str(ex), 11) from ex
    finally:
        ended = time.time()
        if killed:
            job.mark_killed(ended, ended - start, errors)
        else:
            job.mark_complete(exitcode, ended, ended - start, errors)
        job.save_to(statefile)


if __name__ == '__main__':
    try:
        main(sys.argv[1:])
        sys.exit(0)
    except FatalError as ex:
        print(str(ex), file=sys.stderr)
        sys.exit(ex.exitcode)
    except Exception as ex:
        print(str(ex), file=sys.stderr)
        tb.print_exc()
        sys.exit(30)
