"""
An implementation of the ResourceStore interface based on a simple in-memory look-up.  

This is provided primarily for testing purposes and for applications whose jobs all run in the
same process (see :py:class:`~dams.tasks.InlineTaskQueue`).
"""
import threading
from copy import deepcopy
from collections.abc import Mapping, MutableMapping
from typing import Iterator
from logging import Logger

from . import base

class InMemoryResourceStore(base.ResourceStore):
    """
    an in-memory ResourceStore implementation.  Records are kept in dictionaries; copies are 
    returned so that changes to a loaded resource are not visible until saved.
    """

    def __init__(self, config: Mapping = None, _dbdata: Mapping = None, log: Logger = None):
        """
        :param dict  config:  the store configuration
        :param dict _dbdata:  the initial data for the database.  (Note: internal knowledge of 
                              of the in-memory data structure required to use this input.)  If 
                              not provided, an empty database is created.
        """
        super(InMemoryResourceStore, self).__init__(config, log)
        self._db = {
            base.WORKS: {},
            base.FILE_SETS: {},
            base.UPLOADS: {},
            base.DESCRIPTORS: {},
            "nextnum": {}
        }
        if _dbdata:
            self._db.update(deepcopy(_dbdata))
        self._dblock = threading.RLock()

    def _next_recnum(self, collname):
        with self._dblock:
            self._db['nextnum'][collname] = self._db['nextnum'].get(collname, 0) + 1
            return self._db['nextnum'][collname]

    def _get_from_coll(self, collname, id) -> MutableMapping:
        with self._dblock:
            return deepcopy(self._db.get(collname, {}).get(id))

    def _select_from_coll(self, collname, **constraints) -> Iterator[MutableMapping]:
        with self._dblock:
            recs = list(self._db.get(collname, {}).values())
        for rec in recs:
            if all(rec.get(ck) == cv for ck, cv in constraints.items()):
                yield deepcopy(rec)

    def _select_prop_contains(self, collname, prop, target) -> Iterator[MutableMapping]:
        with self._dblock:
            recs = list(self._db.get(collname, {}).values())
        for rec in recs:
            if isinstance(rec.get(prop), (list, tuple)) and target in rec[prop]:
                yield deepcopy(rec)

    def _remove_from_list(self, collname, id, prop, target):
        with self._dblock:
            rec = self._db.get(collname, {}).get(id)
            if rec and isinstance(rec.get(prop), list):
                rec[prop] = [v for v in rec[prop] if v != target]

    def _delete_from(self, collname, id):
        with self._dblock:
            if collname in self._db and id in self._db[collname]:
                del self._db[collname][id]
                return True
            return False

    def _upsert(self, collname: str, recdata: Mapping) -> bool:
        with self._dblock:
            if collname not in self._db:
                self._db[collname] = {}
            exists = bool(self._db[collname].get(recdata['id']))
            self._db[collname][recdata['id']] = deepcopy(recdata)
            return not exists
