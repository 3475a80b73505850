"""
Utilities for loading and merging the configuration that drives a DAMS application and for 
setting up its logging.

The configuration is a nested dictionary, typically read from a YAML or JSON file.  Applications 
merge their configuration over a set of defaults via :py:func:`merge_config`.
"""
import os, json, logging
from collections.abc import Mapping
from copy import deepcopy

import yaml

from . import DAMSException

_log_levels_byname = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET
}

DEF_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"

class ConfigurationException(DAMSException):
    """
    a class indicating an error in the configuration of the system
    """
    def __init__(self, msg, cause=None, sys=None):
        super(ConfigurationException, self).__init__(msg, cause, sys)

def load_from_file(configfile: str) -> Mapping:
    """
    read the configuration from the given file and return it as a dictionary.  The file is parsed
    as JSON if its name ends in ".json"; otherwise, it is parsed as YAML.

    :raise ConfigurationException:  if the file cannot be read or parsed
    """
    try:
        with open(configfile) as fd:
            if configfile.endswith(".json"):
                return json.load(fd)
            out = yaml.safe_load(fd)
    except (IOError, ValueError, yaml.YAMLError) as ex:
        raise ConfigurationException("%s: Unable to load configuration: %s" % (configfile, str(ex)),
                                     cause=ex)
    if out is None:
        out = {}
    if not isinstance(out, Mapping):
        raise ConfigurationException(configfile + ": configuration is not an object")
    return out

def merge_config(primary: Mapping, defconf: Mapping) -> Mapping:
    """
    merge the primary configuration over the default configuration.  Values in the primary 
    override those in the default; nested dictionaries are merged recursively.  The default
    dictionary is updated in place and returned.
    """
    for key in primary:
        if key in defconf and isinstance(defconf[key], Mapping) and isinstance(primary[key], Mapping):
            defconf[key] = merge_config(primary[key], dict(defconf[key]))
        else:
            defconf[key] = deepcopy(primary[key])
    return defconf

def get_param(config: Mapping, name: str, type_, default=None):
    """
    return the value of a configuration parameter, checking that it has the expected type.  A 
    dotted name (e.g. "locking.timeout") reaches into nested dictionaries.

    :raise ConfigurationException:  if the value is present but not of the requested type
    """
    val = config
    for part in name.split('.'):
        if not isinstance(val, Mapping) or part not in val:
            return default
        val = val[part]
    if val is None:
        return default
    if type_ is float and isinstance(val, int) and not isinstance(val, bool):
        val = float(val)
    if not isinstance(val, type_):
        raise ConfigurationException("%s: value has wrong type (need %s): %s" %
                                     (name, type_.__name__, repr(val)))
    return val

_log_handler = None

def configure_log(logfile: str=None, level=None, format: str=None, config: Mapping=None,
                  addstderr=False):
    """
    configure the root logger for the application.  A file handler is attached when a log file
    is given either directly or via the configuration's ``logfile`` parameter (which, if relative,
    is interpreted relative to the ``logdir`` parameter).

    :param str   logfile:  the path of the file to write log messages to
    :param int|str level:  the minimum level to record; defaults to the ``loglevel`` parameter or DEBUG
    :param str    format:  the format for the messages; defaults to the ``logformat`` parameter
    :param dict   config:  the application configuration
    :param bool addstderr: if True, also send messages to standard error
    """
    global _log_handler
    if not config:
        config = {}
    if not logfile:
        logfile = config.get('logfile')
    if logfile and not os.path.isabs(logfile) and config.get('logdir'):
        logfile = os.path.join(config['logdir'], logfile)
    if level is None:
        level = config.get('loglevel', logging.DEBUG)
    if not isinstance(level, int):
        if str(level).upper() not in _log_levels_byname:
            raise ConfigurationException("loglevel: unrecognized level name: " + str(level))
        level = _log_levels_byname[str(level).upper()]
    if not format:
        format = config.get('logformat', DEF_LOG_FORMAT)

    rootlog = logging.getLogger()
    rootlog.setLevel(level)
    fmtr = logging.Formatter(format)

    if logfile and not _log_handler:
        logdir = os.path.dirname(logfile)
        if logdir and not os.path.exists(logdir):
            os.makedirs(logdir)
        _log_handler = logging.FileHandler(logfile)
        _log_handler.setLevel(logging.NOTSET)
        _log_handler.setFormatter(fmtr)
        rootlog.addHandler(_log_handler)

    if addstderr:
        hdlr = logging.StreamHandler()
        hdlr.setLevel(logging.NOTSET)
        hdlr.setFormatter(fmtr)
        rootlog.addHandler(hdlr)
