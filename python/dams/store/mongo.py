"""
An implementation of the ResourceStore interface that uses a MongoDB database as its backend store
"""
import re
from collections.abc import Mapping, MutableMapping
from typing import Iterator
from logging import Logger

from pymongo import MongoClient, ReturnDocument

from . import base

_dburl_re = re.compile(r"^mongodb://(\w+(:\S+)?@)?\w+(\.\w+)*(:\d+)?/\w+(\?\w.*)?$")

class MongoResourceStore(base.ResourceStore):
    """
    an implementation of ResourceStore using a MongoDB database as the backend store.  Removing a 
    member from a list (as happens when a FileSet is deleted) is done with an atomic ``$pull``.
    """

    def __init__(self, dburl: str, config: Mapping = None, log: Logger = None):
        """
        create the store with its connector to the MongoDB database

        :param str   dburl:  the URL of MongoDB database in the form, 'mongodb://USER:PW@HOST:PORT/DBNAME' 
        :param dict config:  the configuration for the store
        """
        if not _dburl_re.match(dburl):
            raise ValueError("MongoResourceStore: Bad dburl format "
                             "(need 'mongodb://[USER:PASS@]HOST[:PORT]/DBNAME'): " + dburl)
        self._dburl = dburl
        self._mngocli = None
        self._native = None
        super(MongoResourceStore, self).__init__(config, log)

    def connect(self):
        """
        establish a connection to the database.  This will set the native property to the pymongo 
        database object.
        """
        self._mngocli = MongoClient(self._dburl)
        self._native = self._mngocli.get_database()

    def disconnect(self):
        """
        close the connection to the database.
        """
        if self._mngocli:
            try:
                self._mngocli.close()
            finally:
                self._mngocli = None
                self._native = None

    @property
    def native(self):
        """
        the native pymongo database object that contains the store's collections.  Accessing this
        property will implicitly connect this client to the underlying MongoDB database.
        """
        if self._native is None:
            self.connect()
        return self._native

    def _upsert(self, collname: str, recdata: Mapping) -> bool:
        try:
            id = recdata['id']
        except KeyError:
            raise base.PersistenceError("_upsert(): record is missing required 'id' property")

        try:
            result = self.native[collname].replace_one({"id": id}, dict(recdata), upsert=True)
            return result.matched_count == 0
        except Exception as ex:
            raise base.PersistenceError("Failed to save record with id=%s: %s" % (id, str(ex)),
                                        id, cause=ex)

    def _next_recnum(self, collname):
        try:
            result = self.native["nextnum"].find_one_and_update({"slot": collname}, {"$inc": {"next": 1}},
                                                                upsert=True,
                                                                return_document=ReturnDocument.AFTER)
            return result["next"]
        except Exception as ex:
            raise base.PersistenceError("Failed to access named sequence, =%s: %s" % (collname, str(ex)),
                                        cause=ex)

    def _get_from_coll(self, collname, id) -> MutableMapping:
        try:
            return self.native[collname].find_one({"id": id}, {'_id': False})
        except Exception as ex:
            raise base.PersistenceError("Failed to load record with id=%s: %s" % (id, str(ex)),
                                        id, cause=ex)

    def _select_from_coll(self, collname, **constraints) -> Iterator[MutableMapping]:
        try:
            for rec in self.native[collname].find(constraints, {'_id': False}):
                yield rec
        except Exception as ex:
            raise base.PersistenceError("Failed while selecting records: " + str(ex), cause=ex)

    def _select_prop_contains(self, collname, prop, target) -> Iterator[MutableMapping]:
        try:
            for rec in self.native[collname].find({prop: target}, {'_id': False}):
                yield rec
        except Exception as ex:
            raise base.PersistenceError("Failed while selecting records: " + str(ex), cause=ex)

    def _remove_from_list(self, collname, id, prop, target):
        try:
            self.native[collname].update_one({"id": id}, {"$pull": {prop: target}})
        except Exception as ex:
            raise base.PersistenceError("Failed to update record with id=%s: %s" % (id, str(ex)),
                                        id, cause=ex)

    def _delete_from(self, collname, id):
        try:
            results = self.native[collname].delete_one({"id": id})
            return results.deleted_count > 0
        except Exception as ex:
            raise base.PersistenceError("Failed to delete record with id=%s: %s" % (id, str(ex)),
                                        id, cause=ex)
