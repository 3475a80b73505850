"""
Logging helpers shared across the DAMS packages
"""
import logging

utilslog = logging.getLogger("dams.utils")

# below DEBUG: for messages that would flood a DEBUG-level log (e.g. per-lock, per-file events)
BLAB = logging.DEBUG - 1
logging.addLevelName(BLAB, "BLAB")

def blab(log, msg, *args, **kwargs):
    """
    log a message at the BLAB level.  Such messages are not shown when the log's level is set to 
    DEBUG.

    :param Logger log:  the Logger object to record to
    :param str    msg:  the message to write
    :param args:        treat msg as a template and insert these values
    :param kwargs:      other arbitrary keywords to pass to log.log()
    """
    log.log(BLAB, msg, *args, **kwargs)
