"""
general utilities used across the DAMS packages
"""
from .io import LockedFile, read_json, write_json, StateException
from .prov import Agent, ANONYMOUS_USER
