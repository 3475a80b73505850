"""
A module available in the dams package that can serve as a test module executable in the 
:py:mod:`dams.jobmgt` framework.  
"""
import logging

def def_process(id, config, args, log=None):
    if not log:
        log = logging.getLogger("dams.jobmgt.testproc")
    log.info("fake processing started")
    if "--fail" in args:
        raise RuntimeError("requested failure for " + id)

process = def_process
