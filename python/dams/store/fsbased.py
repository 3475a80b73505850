"""
An implementation of the ResourceStore interface that persists records as JSON files on disk.
Each collection is a subdirectory of the store's root directory; each record is a file named 
after its (filename-safe) identifier.  File locks make the store safe to share between the 
processes of an application and its jobs.
"""
import os
from pathlib import Path
from collections.abc import Mapping, MutableMapping
from typing import Iterator
from logging import Logger

import filelock

from . import base
from ..utils import read_json, write_json
from ..config import ConfigurationException

def _filename_for(id: str) -> str:
    return id.replace(':', '_').replace('/', '_') + ".json"

class FSBasedResourceStore(base.ResourceStore):
    """
    an implementation of ResourceStore in which the data is persisted to flat files on disk.
    """

    def __init__(self, dbroot: str, config: Mapping = None, log: Logger = None):
        self._root = Path(dbroot)
        if not self._root.is_dir():
            raise ConfigurationException("FSBasedResourceStore: %s: does not exist as a directory" % dbroot)
        super(FSBasedResourceStore, self).__init__(config, log)

    def _ensure_collection(self, collname):
        collpath = self._root / collname
        if not collpath.exists():
            os.makedirs(collpath, exist_ok=True)
        return collpath

    def _read_rec(self, collname, id):
        recpath = self._root / collname / _filename_for(id)
        if not recpath.is_file():
            return None
        try:
            return read_json(str(recpath))
        except ValueError as ex:
            raise base.PersistenceError(id+": Unable to read record as JSON: "+str(ex), id, cause=ex)
        except IOError as ex:
            raise base.PersistenceError(str(recpath)+": file locking error: "+str(ex), id, cause=ex)

    def _write_rec(self, collname, id, data):
        recpath = self._ensure_collection(collname) / _filename_for(id)
        exists = recpath.exists()
        try: 
            write_json(data, str(recpath))
        except Exception as ex:
            raise base.PersistenceError(id+": Unable to write record: "+str(ex), id, cause=ex)
        return not exists

    def _next_recnum(self, collname):
        numdir = self._ensure_collection("nextnum")
        with filelock.FileLock(str(numdir / (collname+".lock"))):
            num = self._read_rec("nextnum", collname)
            if num is None:
                num = 0
            num += 1
            self._write_rec("nextnum", collname, num)
        return num

    def _get_from_coll(self, collname, id) -> MutableMapping:
        return self._read_rec(collname, id)

    def _iter_coll(self, collname) -> Iterator[MutableMapping]:
        collpath = self._root / collname
        if not collpath.is_dir():
            return
        for fn in sorted(os.listdir(collpath)):
            if not fn.endswith(".json"):
                continue
            try:
                yield read_json(str(collpath / fn))
            except ValueError:
                # skip over corrupted records
                self.log.warning("%s: skipping unparseable record file", fn)
            except FileNotFoundError:
                # deleted while iterating
                continue

    def _select_from_coll(self, collname, **constraints) -> Iterator[MutableMapping]:
        for rec in self._iter_coll(collname):
            if all(rec.get(ck) == cv for ck, cv in constraints.items()):
                yield rec

    def _select_prop_contains(self, collname, prop, target) -> Iterator[MutableMapping]:
        for rec in self._iter_coll(collname):
            if isinstance(rec.get(prop), list) and target in rec[prop]:
                yield rec

    def _remove_from_list(self, collname, id, prop, target):
        rec = self._read_rec(collname, id)
        if rec and isinstance(rec.get(prop), list):
            rec[prop] = [v for v in rec[prop] if v != target]
            self._write_rec(collname, id, rec)

    def _delete_from(self, collname, id):
        recpath = self._root / collname / _filename_for(id)
        if recpath.is_file():
            recpath.unlink()
            return True
        return False

    def _upsert(self, collname: str, recdata: Mapping) -> bool:
        try:
            id = recdata['id']
        except KeyError:
            raise base.PersistenceError("_upsert(): record is missing required 'id' property")
        return self._write_rec(collname, id, recdata)
